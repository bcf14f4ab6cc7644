"""parameterize_query：把字符串拼接的 SQL 改写为带占位符的参数化查询。"""
from __future__ import annotations

import re

from guardian.healing.models import CodePatch, HealingAction, Issue, RollbackPlan, TargetSnapshot
from guardian.healing.strategies.base import HealingStrategy

_SQL_VERB = r"(?:SELECT|INSERT|UPDATE|DELETE)\b"

# db.query("SELECT * FROM t WHERE id = '" + userId + "'")
#   -> db.query("SELECT * FROM t WHERE id = $1", [userId])
_CONCAT_CALL = re.compile(
    rf"""
    (?P<call>[A-Za-z_][\w.]*\()\s*
    (?P<q>["'])(?P<sql>{_SQL_VERB}[^"']*?)\s*'?(?P=q)
    \s*\+\s*(?P<var>[A-Za-z_][\w.]*)
    (?:\s*\+\s*(?P<q2>["'])'?(?P<tail>[^"']*)(?P=q2))?
    \s*\)
    """,
    re.IGNORECASE | re.VERBOSE,
)

# 修复后仍然存在的拼接：SQL 字面量后紧跟 "+"
_CONCAT_ANY = re.compile(rf"""(["'])\s*{_SQL_VERB}[^"']*'?\1\s*\+""", re.IGNORECASE)


def _rewrite(m: re.Match[str]) -> str:
    q = m.group("q")
    sql = m.group("sql").rstrip()
    tail = m.group("tail") or ""
    return f"{m.group('call')}{q}{sql} $1{tail}{q}, [{m.group('var')}])"


class ParameterizeQuery(HealingStrategy):
    name = "parameterize_query"
    payload_kind = "code_patch"
    rollback_plan = RollbackPlan(
        invertible=True,
        description="restore the pre-patch source recorded before apply",
        steps=["restore file content from before snapshot"],
    )

    def build_payload(self, issue: Issue, target: TargetSnapshot) -> CodePatch:
        return CodePatch(
            resource=target.resource,
            rule="parameterize_sql",
            occurrences=len(_CONCAT_CALL.findall(target.content)),
        )

    def describe(self, issue: Issue, payload: CodePatch) -> str:
        return f"Replace concatenated SQL in {payload.resource} with parameterized queries"

    def _apply(self, payload: CodePatch, target: TargetSnapshot) -> list[str]:
        target.content, count = _CONCAT_CALL.subn(_rewrite, target.content)
        return [f"parameterized {count} query call(s)"] if count else []

    def verify(self, action: HealingAction, target: TargetSnapshot) -> list[str]:
        return [
            f"raw SQL string concatenation remains: {m.group(0)[:80]}"
            for m in _CONCAT_ANY.finditer(target.content)
        ]
