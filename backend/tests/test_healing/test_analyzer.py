"""问题分类与签名目录单元测试。"""
import itertools

import pytest

from guardian.core.config import SignatureSpec
from guardian.healing.analyzer import IssueAnalyzer
from guardian.healing.models import EventKind, IssueCategory, RawEvent, Severity
from guardian.healing.signatures import UNKNOWN_SIGNATURE_ID, Signature, SignatureCatalog


def _counter_ids():
    counter = itertools.count(1)
    return lambda: f"issue-{next(counter)}"


def _analyzer(**kwargs) -> IssueAnalyzer:
    return IssueAnalyzer(SignatureCatalog.default(), **kwargs)


class TestClassification:
    def test_xss_event(self):
        issue = _analyzer().analyze(RawEvent(
            message="Unsafe innerHTML assignment in CommentView",
            file_path="src/components/CommentView.js",
            component="CommentView",
        ))
        assert issue.signature_id == "unsanitized-input"
        assert issue.category == IssueCategory.SECURITY_VULNERABILITY
        assert issue.severity == Severity.MEDIUM
        assert issue.candidate_strategies == ("sanitize_unsafe_input",)
        assert issue.affected_resources == ("src/components/CommentView.js", "CommentView")

    def test_pattern_beats_substring(self):
        issue = _analyzer().analyze(RawEvent(
            message="possible memory leak after ECONNRESET from lab-results",
        ))
        assert issue.signature_id == "dependency-unavailable"

    def test_substring_is_case_insensitive(self):
        issue = _analyzer().analyze(RawEvent(message="Possible Memory Leak detected in PatientDashboard"))
        assert issue.signature_id == "handle-leak"
        assert issue.category == IssueCategory.RESOURCE_LEAK

    def test_stack_is_searched(self):
        issue = _analyzer().analyze(RawEvent(
            message="Request failed",
            stack="Error: connect ECONNREFUSED 10.0.0.12:443\n    at TCPConnectWrap",
        ))
        assert issue.signature_id == "dependency-unavailable"

    def test_category_hint_default(self):
        issue = _analyzer().analyze(RawEvent(
            message="handle count keeps growing",
            category_hint=IssueCategory.RESOURCE_LEAK,
        ))
        assert issue.signature_id == "category-resource-leak"
        assert issue.candidate_strategies == ("release_leaked_handle",)

    def test_policy_violation_maps_to_security_category(self):
        issue = _analyzer().analyze(RawEvent(message="CSP blocked inline script", kind=EventKind.POLICY_VIOLATION))
        assert issue.signature_id == "category-security"
        assert issue.severity == Severity.HIGH

    def test_duplicate_resources_are_collapsed(self):
        issue = _analyzer().analyze(RawEvent(
            message="xss in search box",
            resource_hint="src/Search.js",
            file_path="src/Search.js",
            endpoint="/api/search",
        ))
        assert issue.affected_resources == ("src/Search.js", "/api/search")
        assert issue.primary_resource == "src/Search.js"


class TestUnknownSignature:
    def test_unhandled_exception_is_high(self):
        issue = _analyzer().analyze(RawEvent(message="TypeError: cannot read properties of undefined"))
        assert issue.signature_id == UNKNOWN_SIGNATURE_ID
        assert issue.severity == Severity.HIGH
        assert issue.candidate_strategies == ()

    def test_warning_is_low(self):
        issue = _analyzer().analyze(RawEvent(message="deprecated prop used", kind=EventKind.WARNING))
        assert issue.severity == Severity.LOW

    def test_anomaly_is_medium(self):
        issue = _analyzer().analyze(RawEvent(message="traffic spike", kind=EventKind.ANOMALY))
        assert issue.severity == Severity.MEDIUM
        assert issue.category == IssueCategory.AVAILABILITY

    def test_catalog_failure_degrades_to_unknown(self):
        class BrokenCatalog(SignatureCatalog):
            def match(self, raw):
                raise RuntimeError("catalog corrupted")

        analyzer = IssueAnalyzer(BrokenCatalog([]))
        issue = analyzer.analyze(RawEvent(message="xss in comment"))
        assert issue.signature_id == UNKNOWN_SIGNATURE_ID


class TestIdentity:
    def test_correlation_defaults_to_issue_id(self):
        issue = _analyzer(id_factory=_counter_ids()).analyze(RawEvent(message="xss"))
        assert issue.id == "issue-1"
        assert issue.correlation_id == "issue-1"

    def test_correlation_from_event(self):
        issue = _analyzer().analyze(RawEvent(message="xss", correlation_id="req-42"))
        assert issue.correlation_id == "req-42"

    def test_deterministic_with_same_id_factory(self):
        raw = RawEvent(message="Unsafe innerHTML", file_path="src/A.js")
        first = _analyzer(id_factory=_counter_ids()).analyze(raw)
        second = _analyzer(id_factory=_counter_ids()).analyze(raw)
        assert first == second

    def test_reanalyze_keeps_correlation(self):
        analyzer = _analyzer(id_factory=_counter_ids())
        original = analyzer.analyze(RawEvent(
            message="handle count keeps growing",
            category_hint=IssueCategory.RESOURCE_LEAK,
        ))
        again = analyzer.reanalyze(original)
        assert again.id != original.id
        assert again.correlation_id == original.correlation_id
        assert again.signature_id == "category-resource-leak"
        assert original.id == "issue-1"

    def test_issue_is_immutable(self):
        issue = _analyzer().analyze(RawEvent(message="xss"))
        with pytest.raises(Exception):
            issue.severity = Severity.LOW


class TestSignatureCatalog:
    def test_duplicate_ids_rejected(self):
        sig = Signature(id="a", category=IssueCategory.AVAILABILITY, severity=Severity.LOW, match_kind="substring", pattern="x")
        with pytest.raises(ValueError):
            SignatureCatalog([sig, sig])

    def test_empty_specs_use_default(self):
        assert len(SignatureCatalog.from_specs([])) == len(SignatureCatalog.default())

    def test_from_specs(self):
        catalog = SignatureCatalog.from_specs([
            SignatureSpec(
                id="fhir-timeout",
                category="availability",
                severity="high",
                match_kind="substring",
                pattern="FHIR gateway timeout",
                strategies=["install_circuit_breaker_wrapper"],
            ),
        ])
        issue = IssueAnalyzer(catalog).analyze(RawEvent(message="fhir gateway timeout after 30s"))
        assert issue.signature_id == "fhir-timeout"
        assert issue.severity == Severity.HIGH

    def test_unknown_match_kind_rejected(self):
        spec = SignatureSpec(id="bad", category="availability", severity="low", match_kind="fuzzy")
        with pytest.raises(ValueError):
            SignatureCatalog.from_specs([spec])
