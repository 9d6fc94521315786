# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .backpressure import OutboxBackpressure
from .messages import (
    CLOSE_POLICY_VIOLATION,
    DEFAULT_LANGUAGE,
    ROLE_SPEAKER,
    ROLE_VIEWER,
    connection_status,
    is_supported_language,
    now_ms,
)
from .outbox import ParticipantOutbox

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    id: str
    role: str
    language: str
    connected_at: int
    connection: Any = field(repr=False, compare=False)
    outbox: ParticipantOutbox = field(repr=False, compare=False)

    @property
    def is_speaker(self) -> bool:
        return self.role == ROLE_SPEAKER


@dataclass(frozen=True)
class RegistryStats:
    total_count: int
    viewer_count: int
    has_speaker: bool


class SessionRegistry:
    """
    In-memory participant table keyed by connection handle.

    Holds the single speaker slot. Owned by one event loop; speaker admission
    is serialised so eviction and insert of a new speaker act as one step.
    """

    def __init__(self, target_depth: int = 32, max_depth: int = 128) -> None:
        self._participants: Dict[Any, Participant] = {}
        self._speaker: Optional[Any] = None
        self._target_depth = target_depth
        self._max_depth = max_depth
        self._speaker_admission = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._participants)

    def __contains__(self, connection: Any) -> bool:
        return connection in self._participants

    @property
    def speaker(self) -> Optional[Participant]:
        if self._speaker is None:
            return None
        return self._participants.get(self._speaker)

    def get(self, connection: Any) -> Optional[Participant]:
        return self._participants.get(connection)

    def participants(self) -> List[Participant]:
        return list(self._participants.values())

    async def register(
        self,
        connection: Any,
        role: str,
        language: str = DEFAULT_LANGUAGE,
    ) -> Participant:
        role = ROLE_SPEAKER if role == ROLE_SPEAKER else ROLE_VIEWER
        if not is_supported_language(language):
            language = DEFAULT_LANGUAGE
        if role != ROLE_SPEAKER:
            return self._insert(connection, role, language)

        # Eviction awaits the old socket; the slot stays held until the new speaker is stored.
        async with self._speaker_admission:
            if self._speaker is not None:
                await self._evict_speaker()
            return self._insert(connection, role, language)

    def _insert(self, connection: Any, role: str, language: str) -> Participant:
        pid = str(uuid.uuid4())
        participant = Participant(
            id=pid,
            role=role,
            language=language,
            connected_at=now_ms(),
            connection=connection,
            outbox=ParticipantOutbox(
                connection,
                backpressure=OutboxBackpressure(self._target_depth, self._max_depth),
                label=pid,
            ),
        )
        self._participants[connection] = participant
        if role == ROLE_SPEAKER:
            self._speaker = connection
        self.broadcast_status()
        return participant

    async def _evict_speaker(self) -> None:
        old_connection = self._speaker
        old = self._participants.pop(old_connection, None)
        self._speaker = None
        if old is None:
            return
        logger.info("speaker replaced old=%s", old.id)
        await old.outbox.close()
        with suppress(Exception):
            await old_connection.close(code=CLOSE_POLICY_VIOLATION, reason="New speaker connected")

    def unregister(self, connection: Any) -> Optional[Participant]:
        participant = self._participants.pop(connection, None)
        if participant is None:
            return None
        if self._speaker is connection:
            self._speaker = None
        participant.outbox.discard()
        self.broadcast_status()
        return participant

    def set_language(self, connection: Any, language: str) -> bool:
        participant = self._participants.get(connection)
        if participant is None or not is_supported_language(language):
            return False
        participant.language = language
        return True

    def viewers_by_language(self) -> Dict[str, List[Any]]:
        grouped: Dict[str, List[Any]] = {}
        for connection, participant in self._participants.items():
            if participant.role != ROLE_VIEWER:
                continue
            grouped.setdefault(participant.language, []).append(connection)
        return grouped

    def stats(self) -> RegistryStats:
        viewers = sum(1 for p in self._participants.values() if p.role == ROLE_VIEWER)
        return RegistryStats(
            total_count=len(self._participants),
            viewer_count=viewers,
            has_speaker=self._speaker is not None,
        )

    def send(self, connection: Any, message: Dict[str, Any]) -> bool:
        participant = self._participants.get(connection)
        if participant is None:
            return False
        return participant.outbox.put(message)

    def broadcast(self, message: Dict[str, Any]) -> int:
        delivered = 0
        for participant in list(self._participants.values()):
            if participant.outbox.put(message):
                delivered += 1
        return delivered

    def broadcast_status(self) -> None:
        stats = self.stats()
        self.broadcast(connection_status("speaking" if stats.has_speaker else "idle", stats.viewer_count))

    async def flush(self) -> None:
        for participant in list(self._participants.values()):
            await participant.outbox.join()

    async def close_all(self, code: int, reason: str = "") -> None:
        for connection, participant in list(self._participants.items()):
            await participant.outbox.close()
            with suppress(Exception):
                await connection.close(code=code, reason=reason)
        self._participants.clear()
        self._speaker = None
