# coding=utf-8
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Optional

from .messages import (
    CLOSE_GOING_AWAY,
    ROLE_SPEAKER,
    AudioData,
    ClientMessage,
    LanguageSelect,
    SpeakerStart,
    SpeakerStop,
    caption_update,
    error_message,
)
from .session_registry import Participant, SessionRegistry
from .transcription_bridge import STATE_STARTING, CaptionEvent, TranscriptionBridge
from .translation_cache import CachingTranslator

logger = logging.getLogger(__name__)


class BroadcastCoordinator:
    """
    Routes validated client messages and fans recognized captions out to
    viewers, translated per subscribed language.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        translator: CachingTranslator,
        bridge: TranscriptionBridge,
    ) -> None:
        self.registry = registry
        self.translator = translator
        self.bridge = bridge
        self.source_language = translator.source_language
        self.captions_sent = 0
        self.interims_superseded = 0
        self._auto_start_used = False
        self._dropped_audio_logged = False
        self._speaker_admission = asyncio.Lock()
        self._consumer_task: Optional[asyncio.Task] = None
        bridge.on_stopped = self._on_bridge_stopped

    def start(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.get_running_loop().create_task(self._consume())

    async def shutdown(self) -> None:
        await self.bridge.stop(reason="shutdown")
        await self.registry.close_all(CLOSE_GOING_AWAY, "Server shutting down")
        task = self._consumer_task
        self._consumer_task = None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def connect(self, connection: Any, role: str) -> Participant:
        self.start()
        if role == ROLE_SPEAKER:
            async with self._speaker_admission:
                if self.registry.speaker is not None:
                    await self._stop_speaking(reason="speaker_replaced")
                self._rearm_auto_start()
                participant = await self.registry.register(connection, role)
        else:
            participant = await self.registry.register(connection, role)
        logger.info("participant joined id=%s role=%s total=%d", participant.id, participant.role, len(self.registry))
        return participant

    async def disconnect(self, connection: Any) -> Optional[Participant]:
        participant = self.registry.unregister(connection)
        if participant is None:
            return None
        logger.info("participant left id=%s role=%s total=%d", participant.id, participant.role, len(self.registry))
        if participant.is_speaker:
            await self._stop_speaking(reason="speaker_disconnected")
        return participant

    async def handle_message(self, connection: Any, message: ClientMessage) -> None:
        participant = self.registry.get(connection)
        if participant is None:
            logger.warning("message from unregistered connection type=%s", message.type)
            return
        try:
            await self._route(participant, message)
        except Exception:
            logger.exception("message handling failed peer=%s type=%s", participant.id, message.type)

    async def _route(self, participant: Participant, message: ClientMessage) -> None:
        if isinstance(message, LanguageSelect):
            if participant.is_speaker:
                self._reject(participant, "LANGUAGE_SELECT is only accepted from viewers")
                return
            if self.registry.set_language(participant.connection, message.language):
                logger.info("language selected peer=%s language=%s", participant.id, message.language)
            return

        if not participant.is_speaker:
            self._reject(participant, f"{message.type} is only accepted from the speaker")
            return

        if isinstance(message, SpeakerStart):
            self._auto_start_used = True
            self._dropped_audio_logged = False
            await self.bridge.ensure_started()
        elif isinstance(message, SpeakerStop):
            self._auto_start_used = True
            await self._stop_speaking(reason="speaker_stop")
        elif isinstance(message, AudioData):
            await self._relay_audio(message.data)

    def _reject(self, participant: Participant, reason: str) -> None:
        logger.info("message rejected peer=%s role=%s reason=%s", participant.id, participant.role, reason)
        self.registry.send(participant.connection, error_message(reason))

    async def _relay_audio(self, data: bytes) -> None:
        if not self.bridge.connected:
            if self.bridge.state == STATE_STARTING:
                await self.bridge.ensure_started()
            elif not self._auto_start_used:
                # Audio arrived without SPEAKER_START; try once per speaking cycle.
                self._auto_start_used = True
                logger.info("auto-starting transcription on first audio chunk")
                await self.bridge.ensure_started()
            if not self.bridge.connected:
                if not self._dropped_audio_logged:
                    self._dropped_audio_logged = True
                    logger.warning("transcription not running; dropping audio until SPEAKER_START")
                return
        await self.bridge.send_audio(data)

    def _rearm_auto_start(self) -> None:
        self._auto_start_used = False
        self._dropped_audio_logged = False

    def _on_bridge_stopped(self, reason: str) -> None:
        if reason == "idle_timeout":
            # Resumed audio after a pause opens a new session.
            self._rearm_auto_start()
            logger.info("transcription stopped reason=%s; auto-start re-armed", reason)
        else:
            logger.warning("transcription stopped reason=%s; waiting for SPEAKER_START", reason)

    async def _stop_speaking(self, reason: str) -> None:
        await self.bridge.stop(reason=reason)

    async def _consume(self) -> None:
        while True:
            event = await self.bridge.events.get()
            if not event.is_final and not self.bridge.events.empty():
                self.interims_superseded += 1
                continue
            try:
                await self.handle_transcript(event)
            except Exception:
                logger.exception("caption fan-out failed final=%s chars=%d", event.is_final, len(event.text))

    async def handle_transcript(self, event: CaptionEvent) -> int:
        """
        Translate one recognized segment into every subscribed language and
        queue it to the matching viewers. Returns the number of messages queued.
        """
        languages = set(self.registry.viewers_by_language()) | {self.source_language}
        translations = await self.translator.translate_batch(event.text, languages)

        # Subscriptions may have changed while translating.
        by_language = self.registry.viewers_by_language()
        sent = 0
        for language, text in translations.items():
            message = caption_update(text, language, event.is_final, event.timestamp)
            for connection in by_language.get(language, []):
                if self.registry.send(connection, message):
                    sent += 1

        speaker = self.registry.speaker
        if speaker is not None:
            echo = caption_update(event.text, self.source_language, event.is_final, event.timestamp)
            if self.registry.send(speaker.connection, echo):
                sent += 1

        self.captions_sent += sent
        logger.debug(
            "caption fanned out final=%s languages=%d messages=%d",
            event.is_final,
            len(translations),
            sent,
        )
        return sent
