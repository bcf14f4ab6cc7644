"""
数据模型包 (Data Models Package)

集中导出 Guardian 的 SQLAlchemy ORM 模型：审计条目、审批工单、熔断状态。
"""
from guardian.models.audit_entry import AuditEntryRecord
from guardian.models.circuit_state import CircuitStateRecord
from guardian.models.review_ticket import ReviewTicketRecord

__all__ = ["AuditEntryRecord", "CircuitStateRecord", "ReviewTicketRecord"]
