"""
熔断状态模型 (Circuit State Model)

每个外部依赖一行，进程重启时恢复。时间戳以 epoch 秒保存。
"""
from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from guardian.core.database import Base


class CircuitStateRecord(Base):
    """熔断状态表 (Circuit State Table)"""
    __tablename__ = "circuit_states"

    name: Mapped[str] = mapped_column(String(200), primary_key=True)  # 依赖名称 (Dependency name)
    state: Mapped[str] = mapped_column(String(10), nullable=False, default="closed")  # closed/open/half_open
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_transition_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    next_retry_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    open_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cooldown_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
