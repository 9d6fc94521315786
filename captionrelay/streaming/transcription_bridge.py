# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .messages import now_ms

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_STARTING = "starting"
STATE_STARTED = "started"


@dataclass(frozen=True)
class CaptionEvent:
    text: str
    is_final: bool
    timestamp: int


class TranscriptionBridge:
    """
    Owns at most one upstream recognition session.

    session_factory() returns an object with async connect(), send_audio(bytes),
    close() and an async-iterable events() of (text, is_final) pairs; it may be
    None when no provider is configured. Recognized text is published on the
    events queue as CaptionEvent.

    on_stopped, when set, is called with the reason whenever the bridge ends a
    session on its own (idle timeout or the upstream stream ending).
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]],
        idle_timeout_sec: float = 30.0,
    ) -> None:
        self.session_factory = session_factory
        self.idle_timeout_sec = max(0.0, float(idle_timeout_sec))
        self.events: "asyncio.Queue[CaptionEvent]" = asyncio.Queue()
        self.state = STATE_IDLE
        self.sessions_opened = 0
        self.audio_chunks = 0
        self._session: Optional[Any] = None
        self._start_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._last_audio_at = 0.0
        self.on_stopped: Optional[Callable[[str], None]] = None

    @property
    def available(self) -> bool:
        return self.session_factory is not None

    @property
    def connected(self) -> bool:
        return self.state == STATE_STARTED and self._session is not None

    async def ensure_started(self) -> bool:
        """
        Establish the upstream session if needed.

        Concurrent callers share one in-flight attempt; returns whether a
        session is established afterwards.
        """
        if self.connected:
            return True
        if self.session_factory is None:
            logger.warning("transcription provider not configured; audio will not be transcribed")
            return False
        if self._start_task is None:
            self.state = STATE_STARTING
            self._start_task = asyncio.get_running_loop().create_task(self._open())
        return await asyncio.shield(self._start_task)

    async def _open(self) -> bool:
        session = None
        try:
            session = self.session_factory()
            await session.connect()
        except asyncio.CancelledError:
            self.state = STATE_IDLE
            raise
        except Exception as e:
            logger.error("transcription connect failed err=%s", e)
            if session is not None:
                with suppress(Exception):
                    await session.close()
            self.state = STATE_IDLE
            return False
        finally:
            self._start_task = None

        loop = asyncio.get_running_loop()
        self._session = session
        self.state = STATE_STARTED
        self.sessions_opened += 1
        self._last_audio_at = time.monotonic()
        self._reader_task = loop.create_task(self._read(session))
        if self.idle_timeout_sec > 0:
            self._watchdog_task = loop.create_task(self._watch_idle(session))
        logger.info("transcription session started n=%d", self.sessions_opened)
        return True

    async def send_audio(self, chunk: bytes) -> bool:
        session = self._session
        if not self.connected or session is None:
            return False
        self._last_audio_at = time.monotonic()
        try:
            await session.send_audio(chunk)
        except Exception as e:
            logger.warning("transcription send failed bytes=%d err=%s", len(chunk), e)
            return False
        self.audio_chunks += 1
        return True

    async def _read(self, session: Any) -> None:
        try:
            async for text, is_final in session.events():
                text = str(text or "").strip()
                if not text:
                    continue
                self.events.put_nowait(CaptionEvent(text=text, is_final=bool(is_final), timestamp=now_ms()))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("transcription stream failed err=%s", e)

        if self._session is session:
            logger.warning("transcription stream ended; returning to idle")
            self._reset()
            with suppress(Exception):
                await session.close()
            self._notify_stopped("stream_ended")

    async def _watch_idle(self, session: Any) -> None:
        interval = max(0.05, min(1.0, self.idle_timeout_sec / 4.0))
        while self._session is session:
            await asyncio.sleep(interval)
            if self._session is not session:
                return
            idle = time.monotonic() - self._last_audio_at
            if idle >= self.idle_timeout_sec:
                logger.warning("transcription idle timeout sec=%.1f", idle)
                await self.stop(reason="idle_timeout")
                self._notify_stopped("idle_timeout")
                return

    def _notify_stopped(self, reason: str) -> None:
        if self.on_stopped is None:
            return
        try:
            self.on_stopped(reason)
        except Exception:
            logger.exception("on_stopped callback failed reason=%s", reason)

    def _reset(self) -> Optional[Any]:
        session = self._session
        self._session = None
        self.state = STATE_IDLE
        current = asyncio.current_task()
        for task in (self._reader_task, self._watchdog_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reader_task = None
        self._watchdog_task = None
        return session

    async def stop(self, reason: str = "stop") -> None:
        start_task = self._start_task
        if start_task is not None:
            with suppress(asyncio.CancelledError, Exception):
                await asyncio.shield(start_task)
        session = self._reset()
        if session is None:
            return
        with suppress(Exception):
            await session.close()
        logger.info("transcription session closed reason=%s", reason)
