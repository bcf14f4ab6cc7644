"""
审计日志查询响应模型。
"""
from typing import List

from pydantic import BaseModel

from guardian.healing.models import AuditEntry


class AuditLogPage(BaseModel):
    """审计日志分页响应体。"""
    items: List[AuditEntry]
    count: int
    limit: int
    offset: int
