"""
SHIPGATE Label Resolver

Deterministic classification → label-set mapping over a closed rule
table. Unmapped combinations fail closed: no labels, manual review.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from shipgate.config_loader import LabelRule, LabelsConfig
from shipgate.errors import UnmappedClassification
from shipgate.models import Classification, Label


class LabelResolution(BaseModel):
    labels: list[Label] = Field(default_factory=list)
    manual_review: bool = False
    priority: bool = False
    code: str | None = None
    reason: str = ""

    @property
    def names(self) -> list[str]:
        return [label.display_name for label in self.labels]


class LabelResolver:
    def __init__(self, config: LabelsConfig):
        self.rules = list(config.rules)
        self.platforms = {p.lower() for p in config.platforms}

    def _match(self, classification: Classification) -> LabelRule | None:
        candidates = [r for r in self.rules if r.type == classification.type]
        # Rules pinned on API impact win over wildcard rules.
        for rule in candidates:
            if rule.public_api_changed is not None and rule.public_api_changed == classification.public_api_changed:
                return rule
        for rule in candidates:
            if rule.public_api_changed is None:
                return rule
        return None

    def resolve(self, classification: Classification) -> LabelResolution:
        rule = self._match(classification)
        if rule is None:
            return self._unmapped(classification, f"no rule for type={classification.type} "
                                                  f"public_api_changed={classification.public_api_changed}")

        labels: list[Label] = []
        for label in rule.labels:
            if label not in labels:
                labels.append(label)

        if classification.platform:
            platform = classification.platform.lower()
            if platform not in self.platforms:
                return self._unmapped(classification, f"unknown platform {classification.platform!r}")
            labels.append(Label(name=platform, tag="Platform"))

        return LabelResolution(
            labels=labels,
            priority=rule.priority or classification.security_relevant,
            reason=f"rule type={rule.type}",
        )

    def resolve_strict(self, classification: Classification) -> LabelResolution:
        resolution = self.resolve(classification)
        if resolution.code == UnmappedClassification.code:
            raise UnmappedClassification(resolution.reason, artifact=classification.model_dump())
        return resolution

    @staticmethod
    def _unmapped(classification: Classification, reason: str) -> LabelResolution:
        return LabelResolution(
            labels=[],
            manual_review=True,
            priority=classification.security_relevant,
            code=UnmappedClassification.code,
            reason=reason,
        )
