"""
审计日志服务 (Audit Logger Service)

功能描述 (Description):
    自愈流水线的只追加审计记录器。每次决策和动作（包括被拒绝、被限流的尝试）都写一条。
    record() 在持久化成功后才返回确认，不做 fire-and-forget。

核心功能 (Core Features):
    1. 持久化确认 (Durable ack) - 在截止时间内提交到 AuditStore 后才返回
    2. 降级缓冲 (Degraded buffering) - 后端不可达时写入有界内存队列，同时写本地 JSON-lines 兜底日志
    3. 顺序恢复 (Ordered recovery) - 后端恢复后按原始顺序 flush，新条目排在积压之后
    4. 失败即停 (Fail loudly) - 缓冲溢出时进入 halted 状态并抛出 AuditBufferOverflowError，
       Agent 据此拒绝任何实时修复
    5. 哈希链 (Hash chain) - 每条记录携带 prev_hash / entry_hash，verify_chain() 检测篡改
       条目在写入存储时才封存序号，存储短暂不可达的重启也不会重复编号

技术特性 (Technical Features):
    - asyncio.Lock 串行化编号与持久化写入，保证哈希链全序
    - 条目只在提交成功后发布到 AuditStream，监控只看到已提交的事件
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from guardian.core.config import settings
from guardian.core.exceptions import (
    AuditBufferOverflowError,
    AuditSequenceConflictError,
    AuditStoreUnavailableError,
)
from guardian.core.logging import get_logger
from guardian.healing.models import AuditAck, AuditEntry, AuditQuery, digest_of
from guardian.services.audit_store import AuditStore
from guardian.services.stream import AuditStream

logger = get_logger(__name__)

DegradedCallback = Callable[[str], Union[Awaitable[None], None]]


def compute_entry_hash(entry: AuditEntry) -> str:
    return digest_of(entry.hash_material())


def _unsealed(entry: AuditEntry) -> AuditEntry:
    return entry.model_copy(update={"sequence": 0, "prev_hash": "", "entry_hash": ""})


class ChainReport(BaseModel):
    """哈希链校验结果。"""
    valid: bool
    checked: int
    first_invalid_sequence: Optional[int] = None
    errors: list[str] = Field(default_factory=list)


def _fallback_logger(path: str) -> logging.Logger:
    """本地兜底日志：每行一个 JSON 审计条目，不向上冒泡到根日志。"""
    fallback = get_logger(f"guardian.audit.fallback.{path}")
    if not fallback.handlers:
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(message)s"))
        fallback.addHandler(handler)
        fallback.setLevel(logging.INFO)
        fallback.propagate = False
    return fallback


class AuditLogger:
    """审计记录器。所有公开方法都可被并发任务安全调用。"""

    def __init__(
        self,
        store: AuditStore,
        stream: Optional[AuditStream] = None,
        buffer_size: Optional[int] = None,
        write_timeout: Optional[float] = None,
        fallback_path: Optional[str] = None,
        on_degraded: Optional[DegradedCallback] = None,
    ) -> None:
        self.store = store
        self.stream = stream
        self.buffer_size = buffer_size if buffer_size is not None else settings.audit_buffer_size
        self.write_timeout = write_timeout if write_timeout is not None else settings.audit_write_timeout
        self.fallback_path = fallback_path or settings.audit_fallback_path
        self.on_degraded = on_degraded

        self._lock = asyncio.Lock()
        self._buffer: deque[AuditEntry] = deque()
        self._sequence = 0
        self._last_hash = ""
        self._initialized = False
        self._degraded = False
        self._halted = False
        self._fallback: Optional[logging.Logger] = None
        self.fallback_lines = 0
        self.overflowed = 0

    # ------------------------------------------------------------------
    # 状态 (State)
    # ------------------------------------------------------------------

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def sequence(self) -> int:
        return self._sequence

    def status(self) -> dict[str, Any]:
        return {
            "sequence": self._sequence,
            "buffered": len(self._buffer),
            "buffer_size": self.buffer_size,
            "degraded": self._degraded,
            "halted": self._halted,
            "fallback_lines": self.fallback_lines,
            "overflowed": self.overflowed,
            "stream": self.stream.stats() if self.stream is not None else None,
        }

    async def initialize(self) -> None:
        """从存储中最后一条记录续接序号和哈希链。存储不可达时保持未初始化，下次写入或 flush 时重试。"""
        async with self._lock:
            await self._initialize()

    async def _initialize(self) -> bool:
        if self._initialized:
            return True
        try:
            last = await asyncio.wait_for(self.store.last(), timeout=self.write_timeout)
        except Exception as e:
            await self._mark_degraded(f"audit store unreachable during initialization ({type(e).__name__}: {str(e) or 'timeout'})")
            return False
        if last is not None:
            self._sequence = last.sequence
            self._last_hash = last.entry_hash
        self._initialized = True
        return True

    # ------------------------------------------------------------------
    # 写入 (Write path)
    # ------------------------------------------------------------------

    async def record(self, entry: AuditEntry) -> AuditAck:
        """
        记录一条审计条目。

        正常情况返回 durable=True；后端不可达时返回 buffered=True（条目已在内存缓冲和兜底日志中）；
        缓冲已满时写入兜底日志、进入 halted 状态并抛出 AuditBufferOverflowError。

        条目在真正写入存储时才封存 sequence / prev_hash，缓冲期间未封存的条目 ack 中 sequence 为 None。
        """
        async with self._lock:
            if self._buffer:
                await self._drain()
            if self._buffer:
                return await self._buffer_entry(entry)

            stored, ok = await self._persist(entry)
            if ok:
                self._clear_degraded()
                await self._publish(stored)
                return AuditAck(entry_id=stored.id, sequence=stored.sequence, durable=True)
            return await self._buffer_entry(stored)

    def _seal(self, entry: AuditEntry) -> AuditEntry:
        self._sequence += 1
        sealed = entry.model_copy(update={"sequence": self._sequence, "prev_hash": self._last_hash})
        sealed = sealed.model_copy(update={"entry_hash": compute_entry_hash(sealed)})
        self._last_hash = sealed.entry_hash
        return sealed

    async def _persist(self, entry: AuditEntry) -> tuple[AuditEntry, bool]:
        """
        封存（如尚未封存）并写入存储。

        返回 (条目, 是否已提交)。序号冲突说明本地链位置已过期：回到存储重新续接，
        以新序号重试一次；仍冲突则按不可写处理，条目保持未封存留在缓冲中。
        """
        for attempt in range(2):
            if not entry.entry_hash:
                if not await self._initialize():
                    return entry, False
                entry = self._seal(entry)
            try:
                await asyncio.wait_for(self.store.append(entry), timeout=self.write_timeout)
                return entry, True
            except AuditSequenceConflictError as e:
                logger.error("Audit sequence %d already taken in the store, resyncing chain: %s", entry.sequence, e.detail)
                self._initialized = False
                entry = _unsealed(entry)
                if attempt:
                    await self._mark_degraded(f"audit sequence conflict at seq {self._sequence}")
            except Exception as e:
                await self._mark_degraded(f"audit store write failed ({type(e).__name__}: {str(e) or 'timeout'})")
                return entry, False
        return entry, False

    async def _mark_degraded(self, reason: str) -> None:
        if self._degraded:
            logger.debug("Audit store still unavailable: %s", reason)
            return
        self._degraded = True
        logger.error("Audit logger degraded: %s", reason)
        await self._notify_degraded(reason)

    async def _buffer_entry(self, entry: AuditEntry) -> AuditAck:
        if len(self._buffer) >= self.buffer_size:
            self._write_fallback(entry, "overflow")
            self.overflowed += 1
            if not self._halted:
                self._halted = True
                logger.critical(
                    "Audit buffer overflow (%d entries), halting live healing; entry %s kept in fallback log",
                    self.buffer_size, entry.id,
                )
                await self._notify_degraded("audit buffer overflow, live healing halted")
            raise AuditBufferOverflowError(
                "Audit buffer is full",
                f"entry {entry.id} written to fallback log {self.fallback_path}",
            )
        self._buffer.append(entry)
        self._write_fallback(entry, "buffered")
        return AuditAck(entry_id=entry.id, sequence=entry.sequence or None, durable=False, buffered=True)

    def _write_fallback(self, entry: AuditEntry, state: str) -> None:
        if self._fallback is None:
            self._fallback = _fallback_logger(self.fallback_path)
        line = json.dumps({"state": state, "entry": entry.model_dump(mode="json")}, sort_keys=True)
        self._fallback.info(line)
        self.fallback_lines += 1

    async def _notify_degraded(self, reason: str) -> None:
        if self.on_degraded is None:
            return
        try:
            result = self.on_degraded(reason)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Audit degraded callback failed")

    async def _publish(self, entry: AuditEntry) -> None:
        if self.stream is not None:
            await self.stream.publish(entry)

    # ------------------------------------------------------------------
    # 恢复 (Recovery)
    # ------------------------------------------------------------------

    async def flush(self) -> int:
        """按原始顺序把缓冲写回存储，返回成功写入的条数。"""
        async with self._lock:
            return await self._drain()

    async def _drain(self) -> int:
        flushed = 0
        while self._buffer:
            stored, ok = await self._persist(self._buffer[0])
            # 已封存但未写入的条目必须保留封存结果，重试时不能再次编号
            self._buffer[0] = stored
            if not ok:
                break
            self._buffer.popleft()
            flushed += 1
            await self._publish(stored)
        if flushed:
            logger.info("Flushed %d buffered audit entries (%d remaining)", flushed, len(self._buffer))
        if not self._buffer:
            self._clear_degraded()
        return flushed

    def _clear_degraded(self) -> None:
        if self._degraded:
            self._degraded = False
            logger.info("Audit store recovered")

    def resume(self) -> None:
        """运维确认兜底日志已对账后解除 halted 状态。"""
        if self._halted:
            logger.warning("Audit logger resumed by operator after overflow")
        self._halted = False

    # ------------------------------------------------------------------
    # 查询 (Query)
    # ------------------------------------------------------------------

    async def query(self, query: AuditQuery) -> list[AuditEntry]:
        try:
            return await self.store.query(query)
        except Exception as e:
            raise AuditStoreUnavailableError("Audit store unavailable", str(e)) from e

    async def verify_chain(self) -> ChainReport:
        """逐条重算哈希并检查前后链接。保留期清理后的第一条记录作为链的起点。"""
        try:
            entries = await self.store.all_entries()
        except Exception as e:
            raise AuditStoreUnavailableError("Audit store unavailable", str(e)) from e

        errors: list[str] = []
        first_invalid: Optional[int] = None
        previous: Optional[AuditEntry] = None
        for entry in entries:
            problems = []
            if compute_entry_hash(entry) != entry.entry_hash:
                problems.append(f"seq {entry.sequence}: entry hash mismatch")
            if previous is not None:
                if entry.sequence != previous.sequence + 1:
                    problems.append(f"seq {entry.sequence}: gap after seq {previous.sequence}")
                elif entry.prev_hash != previous.entry_hash:
                    problems.append(f"seq {entry.sequence}: prev_hash does not match seq {previous.sequence}")
            if problems and first_invalid is None:
                first_invalid = entry.sequence
            errors.extend(problems)
            previous = entry
        return ChainReport(valid=not errors, checked=len(entries), first_invalid_sequence=first_invalid, errors=errors)

    async def purge_expired(self, retention_days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        removed = await self.store.purge_before(cutoff)
        if removed:
            logger.info("Purged %d audit entries older than %d days", removed, retention_days)
        return removed
