from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from showcase.logging import get_logger
from showcase.storage.models import RequestContext

logger = get_logger(__name__)

# Security event types that are also copied into the analytics table
MIRRORED_EVENT_TYPES = frozenset({"security_event", "suspicious_activity"})

DEFAULT_QUEUE_SIZE = 1000


class AuditStore(Protocol):
    def append_security_log(
        self,
        event_type: str,
        event_data: Optional[dict] = None,
        *,
        user_id: Optional[int] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        url: Optional[str] = None,
    ) -> Any: ...

    def append_analytics_event(
        self,
        event_type: str,
        event_data: Optional[dict] = None,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Any: ...


@dataclass
class AuditItem:
    event_type: str
    detail: Dict[str, Any] = field(default_factory=dict)
    subject_id: Optional[int] = None
    context: RequestContext = field(default_factory=RequestContext)
    security: bool = True


class AuditLogger:
    """Append-only security and analytics event writer.

    Writes never raise: a failed write is reported through the structured
    logger and dropped. While a worker is running on the caller's event loop,
    events go through an ``asyncio.Queue``; otherwise they are written inline.
    """

    def __init__(self, store: AuditStore, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.store = store
        self.queue_size = queue_size
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = asyncio.create_task(self._run(), name="audit-log-worker")
        logger.info("audit_worker_started", queue_size=self.queue_size)

    async def stop(self) -> None:
        """Drain pending events, then stop the worker."""
        if not self.running:
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None
        self._queue = None
        self._loop = None
        logger.info("audit_worker_stopped")

    async def flush(self) -> None:
        if self.running and self._on_worker_loop():
            await self._queue.join()

    async def record(
        self,
        event_type: str,
        detail: Optional[Dict[str, Any]] = None,
        subject_id: Optional[int] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        await self._submit(
            AuditItem(
                event_type=event_type,
                detail=dict(detail or {}),
                subject_id=subject_id,
                context=context or RequestContext(),
            )
        )

    async def track(
        self,
        event_type: str,
        detail: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        await self._submit(
            AuditItem(
                event_type=event_type,
                detail=dict(detail or {}),
                context=context or RequestContext(),
                security=False,
            )
        )

    def _on_worker_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    async def _submit(self, item: AuditItem) -> None:
        if self.running and self._on_worker_loop():
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                logger.warning("audit_queue_full", event_type=item.event_type)
        await asyncio.to_thread(self.write, item)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                await asyncio.to_thread(self.write, item)
            finally:
                self._queue.task_done()

    def write(self, item: AuditItem) -> None:
        ctx = item.context
        if item.security:
            try:
                self.store.append_security_log(
                    item.event_type,
                    item.detail,
                    user_id=item.subject_id,
                    user_agent=ctx.user_agent,
                    ip_address=ctx.ip_address,
                    url=ctx.url,
                )
            except Exception as exc:
                logger.error(
                    "security_log_write_failed",
                    event_type=item.event_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return
            if item.event_type not in MIRRORED_EVENT_TYPES:
                return
        try:
            self.store.append_analytics_event(
                item.event_type,
                item.detail,
                user_agent=ctx.user_agent,
                ip_address=ctx.ip_address,
            )
        except Exception as exc:
            logger.warning(
                "analytics_write_failed",
                event_type=item.event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
