import pytest

from shipgate import compliance
from shipgate.config_loader import IdentityConfig
from shipgate.errors import CoverageBelowThreshold, MissingSignOff, ProtectedFileViolation

from conftest import SIGNER_EMAIL, SIGNER_NAME, signed

IDENTITY = IdentityConfig(name=SIGNER_NAME, email=SIGNER_EMAIL)
PROTECTED = ["LICENSE", "NOTICE", ".github/workflows/", "*.pem"]


class TestSignOff:
    def test_all_commits_signed(self):
        result = compliance.check_sign_off([signed("One"), signed("Two")], IDENTITY)
        assert result.passed

    def test_unsigned_commit_reports_its_subject(self):
        messages = [signed("One"), "Quick hack (ABC-123)\n\nNo trailer here."]
        result = compliance.check_sign_off(messages, IDENTITY)
        assert not result.passed
        assert result.code == "MissingSignOff"
        assert result.artifact == "Quick hack (ABC-123)"

    def test_sign_off_from_another_identity_rejected(self):
        message = "Fix (ABC-123)\n\nSigned-off-by: Someone Else <else@example.com>"
        assert not compliance.check_sign_off([message], IDENTITY).passed

    def test_email_match_is_case_insensitive(self):
        message = f"Fix (ABC-123)\n\nSigned-off-by: {SIGNER_NAME} <DEV@Example.com>"
        assert compliance.check_sign_off([message], IDENTITY).passed

    def test_unset_identity_accepts_any_well_formed_trailer(self):
        message = "Fix (ABC-123)\n\nSigned-off-by: Anyone <anyone@example.com>"
        assert compliance.check_sign_off([message], IdentityConfig()).passed

    def test_no_commits_fails(self):
        assert not compliance.check_sign_off([], IDENTITY).passed


class TestProtectedFiles:
    def test_license_without_approval_fails(self):
        result = compliance.check_protected_files(["src/app.py", "LICENSE"], PROTECTED)
        assert not result.passed
        assert result.code == "ProtectedFileViolation"
        assert result.artifact == frozenset({"LICENSE"})

    def test_license_with_explicit_approval_passes(self):
        result = compliance.check_protected_files(["LICENSE"], PROTECTED, explicit_approval=True)
        assert result.passed
        assert result.artifact == frozenset({"LICENSE"})

    def test_directory_prefix_and_glob(self):
        touched = compliance.protected_touched(
            [".github/workflows/ci.yml", "certs/server.pem", "docs/LICENSE.md", "./NOTICE"],
            PROTECTED,
        )
        assert touched == frozenset({".github/workflows/ci.yml", "certs/server.pem", "./NOTICE"})

    def test_untouched_passes(self):
        assert compliance.check_protected_files(["src/app.py"], PROTECTED).passed


class TestCoverage:
    def test_drop_below_floor_fails(self):
        result = compliance.check_coverage(76.0, 74.0)
        assert not result.passed
        assert result.code == "CoverageBelowThreshold"
        assert result.artifact == 74.0

    def test_improvement_below_floor_passes(self):
        result = compliance.check_coverage(74.0, 76.0)
        assert result.passed
        assert "below" in result.reason

    def test_drop_that_stays_above_floor_passes(self):
        assert compliance.check_coverage(95.0, 82.0).passed

    def test_custom_threshold(self):
        assert not compliance.check_coverage(60.0, 55.0, threshold=58.0).passed
        assert compliance.check_coverage(60.0, 59.0, threshold=58.0).passed


def test_evaluate_builds_record_with_failures():
    record, results = compliance.evaluate(
        ["Unsigned (ABC-123)"],
        ["LICENSE"],
        identity=IDENTITY,
        protected_set=PROTECTED,
        coverage=(80.0, 78.5),
    )
    assert not record.sign_off_present
    assert record.protected_files_touched == frozenset({"LICENSE"})
    assert record.coverage_absolute == 78.5
    assert record.coverage_delta == -1.5
    assert record.failures == ("MissingSignOff", "ProtectedFileViolation", "CoverageBelowThreshold")
    assert not record.passed
    assert len(results) == 3


def test_raise_for_maps_codes_to_errors():
    with pytest.raises(MissingSignOff):
        compliance.raise_for(compliance.check_sign_off([], IDENTITY))
    with pytest.raises(ProtectedFileViolation) as exc:
        compliance.raise_for(compliance.check_protected_files(["LICENSE"], PROTECTED))
    assert exc.value.to_dict()["artifact"] == ["LICENSE"]
    with pytest.raises(CoverageBelowThreshold):
        compliance.raise_for(compliance.check_coverage(76.0, 74.0))
    compliance.raise_for(compliance.check_coverage(74.0, 76.0))
