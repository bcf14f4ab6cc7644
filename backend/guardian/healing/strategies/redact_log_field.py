"""
redact_sensitive_log_field：对日志目标中的 PHI / 凭据字段做脱敏。

脱敏不可逆，回滚声明为 none；恢复只能依赖备份。
脱敏规则与日志过滤器共用 guardian.core.logging。
"""
from __future__ import annotations

from guardian.core.logging import SENSITIVE_FIELDS, find_sensitive, redact_text
from guardian.healing.models import NO_ROLLBACK, HealingAction, Issue, RedactionRule, TargetSnapshot
from guardian.healing.strategies.base import HealingStrategy


class RedactSensitiveLogField(HealingStrategy):
    name = "redact_sensitive_log_field"
    payload_kind = "redaction_rule"
    rollback_plan = NO_ROLLBACK

    def build_payload(self, issue: Issue, target: TargetSnapshot) -> RedactionRule:
        extra = issue.context.extra.get("fields") or []
        fields = list(dict.fromkeys([*SENSITIVE_FIELDS, *extra]))
        return RedactionRule(resource=target.resource, fields=fields)

    def describe(self, issue: Issue, payload: RedactionRule) -> str:
        return f"Redact {len(payload.fields)} sensitive field(s) in {payload.resource}"

    def _apply(self, payload: RedactionRule, target: TargetSnapshot) -> list[str]:
        before = target.content
        target.content = redact_text(target.content, payload.fields)
        lines = target.state.get("lines")
        if isinstance(lines, list):
            target.state["lines"] = [redact_text(str(line), payload.fields) for line in lines]
        return ["redacted sensitive values"] if target.content != before else []

    def verify(self, action: HealingAction, target: TargetSnapshot) -> list[str]:
        fields = self.payload_of(action).fields
        texts = [target.content, *[str(line) for line in target.state.get("lines", [])]]
        errors = []
        for text in texts:
            for kind in find_sensitive(text, fields):
                errors.append(f"sensitive value still present ({kind})")
        return errors
