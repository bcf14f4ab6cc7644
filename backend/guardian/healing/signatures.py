"""
签名目录：已知问题模式的静态表。

匹配优先级：正则精确模式 > 子串 > 类别默认。同一优先级内按目录顺序取第一个。
目录运行时只读，替换只能通过策略整体 swap。
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, Optional

from guardian.core.config import SignatureSpec
from guardian.healing.models import EventKind, IssueCategory, RawEvent, Severity

UNKNOWN_SIGNATURE_ID = "unknown"


class MatchKind:
    PATTERN = "pattern"
    SUBSTRING = "substring"
    CATEGORY = "category"


# 数值越小越具体
_TIER = {MatchKind.PATTERN: 0, MatchKind.SUBSTRING: 1, MatchKind.CATEGORY: 2}

# 没有显式 category_hint 时由事件类型推导
_KIND_CATEGORY = {
    EventKind.POLICY_VIOLATION: IssueCategory.SECURITY_VULNERABILITY,
}


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


@dataclass(frozen=True)
class Signature:
    id: str
    category: IssueCategory
    severity: Severity
    match_kind: str
    pattern: str = ""
    strategies: tuple[str, ...] = field(default_factory=tuple)
    description: str = ""

    @property
    def tier(self) -> int:
        return _TIER[self.match_kind]

    def matches(self, text: str, category_hint: Optional[IssueCategory]) -> bool:
        if self.match_kind == MatchKind.PATTERN:
            return bool(self.pattern) and _compile(self.pattern).search(text) is not None
        if self.match_kind == MatchKind.SUBSTRING:
            return bool(self.pattern) and self.pattern.lower() in text.lower()
        if self.match_kind == MatchKind.CATEGORY:
            return category_hint is not None and category_hint.value == self.pattern
        return False

    @classmethod
    def from_spec(cls, spec: SignatureSpec) -> "Signature":
        if spec.match_kind not in _TIER:
            raise ValueError(f"Unknown match kind '{spec.match_kind}' for signature {spec.id}")
        if spec.match_kind == MatchKind.PATTERN:
            _compile(spec.pattern)
        return cls(
            id=spec.id,
            category=IssueCategory(spec.category),
            severity=Severity(spec.severity),
            match_kind=spec.match_kind,
            pattern=spec.pattern,
            strategies=tuple(spec.strategies),
            description=spec.description,
        )


# === 内置签名 ===
DEFAULT_SIGNATURES: tuple[Signature, ...] = (
    Signature(
        id="unsanitized-input",
        category=IssueCategory.SECURITY_VULNERABILITY,
        severity=Severity.MEDIUM,
        match_kind=MatchKind.PATTERN,
        pattern=r"(?i)\b(innerHTML|dangerouslySetInnerHTML|unsanitized input|xss)\b",
        strategies=("sanitize_unsafe_input",),
        description="User input rendered as HTML without sanitization",
    ),
    Signature(
        id="sql-injection",
        category=IssueCategory.SECURITY_VULNERABILITY,
        severity=Severity.HIGH,
        match_kind=MatchKind.PATTERN,
        pattern=r"(?i)(sql injection|syntax error at or near|unterminated quoted string)",
        strategies=("parameterize_query",),
        description="SQL built by string concatenation",
    ),
    Signature(
        id="phi-in-logs",
        category=IssueCategory.SECURITY_VULNERABILITY,
        severity=Severity.CRITICAL,
        match_kind=MatchKind.PATTERN,
        pattern=r"(?i)\b(ssn|mrn|date_of_birth|dob|patient_name|phi)\b.*\b(log|logged|console)\b",
        strategies=("redact_sensitive_log_field",),
        description="Protected health information written to application logs",
    ),
    Signature(
        id="data-corruption",
        category=IssueCategory.DATA_INTEGRITY,
        severity=Severity.HIGH,
        match_kind=MatchKind.PATTERN,
        pattern=r"(?i)(checksum mismatch|data corruption|corrupted record)",
        strategies=("delete_data",),
        description="Corrupted records; only destructive cleanup is known, so never automatic",
    ),
    Signature(
        id="dependency-unavailable",
        category=IssueCategory.AVAILABILITY,
        severity=Severity.HIGH,
        match_kind=MatchKind.PATTERN,
        pattern=r"(ETIMEDOUT|ECONNREFUSED|ECONNRESET|503 Service Unavailable|(?i:upstream timed out))",
        strategies=("install_circuit_breaker_wrapper",),
        description="Outbound dependency repeatedly failing or timing out",
    ),
    Signature(
        id="listener-leak",
        category=IssueCategory.RESOURCE_LEAK,
        severity=Severity.MEDIUM,
        match_kind=MatchKind.SUBSTRING,
        pattern="MaxListenersExceededWarning",
        strategies=("release_leaked_handle",),
        description="Event listeners registered without removal",
    ),
    Signature(
        id="handle-leak",
        category=IssueCategory.RESOURCE_LEAK,
        severity=Severity.MEDIUM,
        match_kind=MatchKind.SUBSTRING,
        pattern="possible memory leak",
        strategies=("release_leaked_handle",),
        description="Timers, subscriptions or connections never released",
    ),
    Signature(
        id="credential-failure",
        category=IssueCategory.SECURITY_VULNERABILITY,
        severity=Severity.HIGH,
        match_kind=MatchKind.SUBSTRING,
        pattern="invalid credentials",
        strategies=("modify_auth_credentials",),
        description="Repeated credential failures; credential changes are never automatic",
    ),
    Signature(
        id="slow-query",
        category=IssueCategory.PERFORMANCE_DEGRADATION,
        severity=Severity.LOW,
        match_kind=MatchKind.SUBSTRING,
        pattern="slow query",
        strategies=(),
        description="Query exceeded the latency budget",
    ),
    Signature(
        id="category-security",
        category=IssueCategory.SECURITY_VULNERABILITY,
        severity=Severity.HIGH,
        match_kind=MatchKind.CATEGORY,
        pattern=IssueCategory.SECURITY_VULNERABILITY.value,
    ),
    Signature(
        id="category-resource-leak",
        category=IssueCategory.RESOURCE_LEAK,
        severity=Severity.MEDIUM,
        match_kind=MatchKind.CATEGORY,
        pattern=IssueCategory.RESOURCE_LEAK.value,
        strategies=("release_leaked_handle",),
    ),
    Signature(
        id="category-availability",
        category=IssueCategory.AVAILABILITY,
        severity=Severity.MEDIUM,
        match_kind=MatchKind.CATEGORY,
        pattern=IssueCategory.AVAILABILITY.value,
        strategies=("install_circuit_breaker_wrapper",),
    ),
    Signature(
        id="category-performance",
        category=IssueCategory.PERFORMANCE_DEGRADATION,
        severity=Severity.LOW,
        match_kind=MatchKind.CATEGORY,
        pattern=IssueCategory.PERFORMANCE_DEGRADATION.value,
    ),
    Signature(
        id="category-data-integrity",
        category=IssueCategory.DATA_INTEGRITY,
        severity=Severity.HIGH,
        match_kind=MatchKind.CATEGORY,
        pattern=IssueCategory.DATA_INTEGRITY.value,
    ),
)


class SignatureCatalog:
    """不可变签名目录。"""

    def __init__(self, signatures: Iterable[Signature]) -> None:
        self._signatures: tuple[Signature, ...] = tuple(signatures)
        ids = [s.id for s in self._signatures]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate signature ids in catalog")

    @classmethod
    def default(cls) -> "SignatureCatalog":
        return cls(DEFAULT_SIGNATURES)

    @classmethod
    def from_specs(cls, specs: Iterable[SignatureSpec]) -> "SignatureCatalog":
        specs = list(specs)
        if not specs:
            return cls.default()
        return cls(Signature.from_spec(s) for s in specs)

    def __len__(self) -> int:
        return len(self._signatures)

    def __iter__(self):
        return iter(self._signatures)

    def get(self, signature_id: str) -> Optional[Signature]:
        for sig in self._signatures:
            if sig.id == signature_id:
                return sig
        return None

    def match(self, raw: RawEvent) -> Optional[Signature]:
        """返回最具体的命中签名，未命中返回 None。"""
        text = raw.message if not raw.stack else f"{raw.message}\n{raw.stack}"
        hint = raw.category_hint or _KIND_CATEGORY.get(raw.kind)
        best: Optional[Signature] = None
        for sig in self._signatures:
            if best is not None and sig.tier >= best.tier:
                continue
            if sig.matches(text, hint):
                best = sig
                if best.tier == 0:
                    break
        return best
