"""sanitize_unsafe_input：把直接写入 HTML 的用户输入包进 sanitizeHtml()。"""
from __future__ import annotations

import re

from guardian.healing.models import CodePatch, HealingAction, Issue, RollbackPlan, TargetSnapshot
from guardian.healing.strategies.base import HealingStrategy

SANITIZER = "sanitizeHtml"

# el.innerHTML = expr;  /  el.outerHTML = expr;
_ASSIGNMENT = re.compile(
    rf"(?P<lhs>\.(?:innerHTML|outerHTML)\s*=(?!=)\s*)(?!\s*{SANITIZER}\()(?P<expr>[^;\n]+?)(?P<end>;|$)",
    re.MULTILINE,
)
# dangerouslySetInnerHTML={{ __html: expr }}
_REACT_HTML = re.compile(rf"(?P<lhs>__html\s*:\s*)(?!\s*{SANITIZER}\()(?P<expr>[^}}\n]+?)(?P<end>\s*}})")


class SanitizeUnsafeInput(HealingStrategy):
    name = "sanitize_unsafe_input"
    payload_kind = "code_patch"
    rollback_plan = RollbackPlan(
        invertible=True,
        description="restore the pre-patch source recorded before apply",
        steps=["restore file content from before snapshot"],
    )

    def build_payload(self, issue: Issue, target: TargetSnapshot) -> CodePatch:
        hits = len(_ASSIGNMENT.findall(target.content)) + len(_REACT_HTML.findall(target.content))
        return CodePatch(resource=target.resource, rule="wrap_html_sink", occurrences=hits)

    def describe(self, issue: Issue, payload: CodePatch) -> str:
        return f"Wrap HTML sinks in {payload.resource} with {SANITIZER}()"

    def _apply(self, payload: CodePatch, target: TargetSnapshot) -> list[str]:
        wrap = lambda m: f"{m.group('lhs')}{SANITIZER}({m.group('expr').strip()}){m.group('end')}"  # noqa: E731
        content, n1 = _ASSIGNMENT.subn(wrap, target.content)
        content, n2 = _REACT_HTML.subn(wrap, content)
        target.content = content
        return [f"wrapped {n1 + n2} html sink(s)"] if n1 + n2 else []

    def verify(self, action: HealingAction, target: TargetSnapshot) -> list[str]:
        errors = []
        for pattern in (_ASSIGNMENT, _REACT_HTML):
            for m in pattern.finditer(target.content):
                errors.append(f"unsanitized html sink remains: {m.group(0).strip()[:80]}")
        return errors
