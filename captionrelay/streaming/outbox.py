# coding=utf-8
from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import suppress
from typing import Any, Callable, Deque, Dict, Optional

from .backpressure import OutboxBackpressure
from .messages import CAPTION_UPDATE

logger = logging.getLogger(__name__)


def _is_interim_caption(message: Dict[str, Any]) -> bool:
    return message.get("type") == CAPTION_UPDATE and not message.get("isFinal")


class ParticipantOutbox:
    """
    Ordered, non-blocking send queue for one connection.

    put() never awaits the socket; a single sender task drains messages in
    FIFO order, so one slow viewer cannot stall fan-out to the others.
    Interim captions are the only messages ever discarded under pressure.
    """

    def __init__(
        self,
        connection: Any,
        backpressure: Optional[OutboxBackpressure] = None,
        label: str = "",
    ) -> None:
        self.connection = connection
        self.backpressure = backpressure or OutboxBackpressure()
        self.label = str(label or "")
        self.closed = False
        self.sent = 0
        self.dropped = 0
        self._pending: Deque[Dict[str, Any]] = deque()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._pending)

    def _discard(self, predicate: Callable[[Dict[str, Any]], bool], limit: Optional[int] = None) -> int:
        kept: Deque[Dict[str, Any]] = deque()
        removed = 0
        for message in self._pending:
            if (limit is None or removed < limit) and predicate(message):
                removed += 1
                continue
            kept.append(message)
        self._pending = kept
        self.dropped += removed
        return removed

    def put(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        decision = self.backpressure.evaluate(len(self._pending))
        if decision.supersede_interim and _is_interim_caption(message):
            language = message.get("language")
            self._discard(lambda m: _is_interim_caption(m) and m.get("language") == language)
        if decision.drop_oldest:
            overflow = len(self._pending) - self.backpressure.max_depth + 1
            if overflow > 0:
                removed = self._discard(_is_interim_caption, limit=overflow)
                if removed:
                    logger.warning(
                        "outbox overflow peer=%s depth=%d dropped_interim=%d",
                        self.label,
                        decision.queue_depth,
                        removed,
                    )
        self._pending.append(message)
        self._idle.clear()
        self._wakeup.set()
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
        return True

    async def _run(self) -> None:
        while not self.closed:
            if not self._pending:
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            message = self._pending.popleft()
            try:
                await self.connection.send_json(message)
            except Exception as e:
                logger.info("outbox send failed peer=%s err=%s", self.label, e)
                self._shutdown()
                return
            self.sent += 1
        self._idle.set()

    def _shutdown(self) -> None:
        self.closed = True
        self.dropped += len(self._pending)
        self._pending.clear()
        self._idle.set()
        self._wakeup.set()

    async def join(self) -> None:
        await self._idle.wait()

    def discard(self) -> Optional[asyncio.Task]:
        self._shutdown()
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return None
        task.cancel()
        return task

    async def close(self) -> None:
        task = self.discard()
        if task is not None:
            with suppress(asyncio.CancelledError, Exception):
                await task
