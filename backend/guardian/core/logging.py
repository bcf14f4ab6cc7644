"""
日志脱敏模块 (Redacting Logging Module)

所有组件通过 get_logger() 获取日志器，日志器自带 RedactingFilter，
在记录写出前把 PHI 和凭据替换为 [REDACTED]。不对 print/console 做任何全局替换。

Every component obtains its logger through get_logger(); the logger carries a
RedactingFilter that replaces PHI and credentials with [REDACTED] before the
record is emitted. Nothing global is monkey-patched.
"""
from __future__ import annotations

import logging
import re
import sys
from typing import Any

REDACTED = "[REDACTED]"

# 敏感字段名（key=value / "key": "value" 形式） (Sensitive field names)
SENSITIVE_FIELDS: tuple[str, ...] = (
    "ssn",
    "social_security_number",
    "mrn",
    "medical_record_number",
    "dob",
    "date_of_birth",
    "patient_name",
    "password",
    "passwd",
    "secret",
    "api_key",
    "access_token",
    "refresh_token",
    "authorization",
)

# 值模式：即使没有字段名也要脱敏 (Value patterns redacted even without a field name)
SENSITIVE_VALUE_PATTERNS: dict[str, re.Pattern[str]] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\b\(?\d{3}\)?[-. ]\d{3}[-. ]\d{4}\b"),
    "bearer": re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*"),
}


def _field_pattern(fields: tuple[str, ...] | list[str]) -> re.Pattern[str]:
    names = "|".join(re.escape(f) for f in fields)
    # ssn=123, ssn: 123, "ssn": "123", 'ssn': '123'
    return re.compile(
        rf"""(?ix)
        (?P<key>["']?\b(?:{names})\b["']?\s*[:=]\s*)
        (?P<quote>["']?)
        (?P<value>(?!\[REDACTED\])[^"',;\s}}]+(?:\s[^"',;\s}}=:]+)*?)
        (?P=quote)
        (?=[,;\s}}]|$)
        """
    )


_DEFAULT_FIELD_RE = _field_pattern(SENSITIVE_FIELDS)


def redact_text(text: str, fields: tuple[str, ...] | list[str] | None = None) -> str:
    """把文本中的敏感字段值和敏感值模式替换为 [REDACTED]。对已脱敏文本幂等。"""
    if not text:
        return text
    field_re = _DEFAULT_FIELD_RE if fields is None else _field_pattern(fields)
    out = text
    # 先替换值模式，"authorization: Bearer xxx" 整体消失，字段规则随后跳过 [REDACTED]
    for pattern in SENSITIVE_VALUE_PATTERNS.values():
        out = pattern.sub(REDACTED, out)
    return field_re.sub(
        lambda m: f"{m.group('key')}{m.group('quote')}{REDACTED}{m.group('quote')}", out
    )


def find_sensitive(text: str, fields: tuple[str, ...] | list[str] | None = None) -> list[str]:
    """返回文本中仍存在的敏感类别名称，空列表表示干净。"""
    found: list[str] = []
    field_re = _DEFAULT_FIELD_RE if fields is None else _field_pattern(fields)
    if field_re.search(text or ""):
        found.append("field")
    for name, pattern in SENSITIVE_VALUE_PATTERNS.items():
        if pattern.search(text or ""):
            found.append(name)
    return found


def _redact_arg(arg: Any) -> Any:
    if isinstance(arg, str):
        return redact_text(arg)
    if isinstance(arg, (int, float, bool)) or arg is None:
        return arg
    return redact_text(str(arg))


class RedactingFilter(logging.Filter):
    """在日志记录格式化之前完成脱敏 (Redact a record before it is formatted)。"""

    def filter(self, record: logging.LogRecord) -> bool:
        # 先格式化再脱敏："ssn=%s" 这类字段名和值分开传入时也能识别
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                if isinstance(record.args, dict):
                    record.args = {k: _redact_arg(v) for k, v in record.args.items()}
                else:
                    record.args = tuple(_redact_arg(a) for a in record.args)
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        return True


_redacting_filter = RedactingFilter()


def get_logger(name: str) -> logging.Logger:
    """获取带脱敏过滤器的日志器，重复调用不会重复添加过滤器。"""
    log = logging.getLogger(name)
    if _redacting_filter not in log.filters:
        log.addFilter(_redacting_filter)
    return log


def setup_logging(level: str = "INFO") -> None:
    """配置根日志处理器；处理器级别同样挂载脱敏过滤器，覆盖第三方库的日志。"""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    handler.addFilter(_redacting_filter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in ("httpx", "httpcore", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
