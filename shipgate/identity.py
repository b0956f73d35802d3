"""SHIPGATE identity constants (version, codename, banner)."""

__version__ = "0.4.0"
__codename__ = "SHIPGATE"
__tagline__ = "Gate Every Stage. Ship Clean."

BANNER = r"""
  ____  _     _       ____       _
 / ___|| |__ (_)_ __ / ___| __ _| |_ ___
 \___ \| '_ \| | '_ \ |  _ / _` | __/ _ \
  ___) | | | | | |_) | |_| | (_| | ||  __/
 |____/|_| |_|_| .__/ \____|\__,_|\__\___|
               |_|
"""
