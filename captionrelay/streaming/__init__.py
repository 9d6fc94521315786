# coding=utf-8

from .backpressure import BackpressureDecision, OutboxBackpressure
from .coordinator import BroadcastCoordinator
from .outbox import ParticipantOutbox
from .rate_limiter import ConnectionGate, RateLimiter
from .session_registry import Participant, RegistryStats, SessionRegistry
from .speechmatics import SpeechmaticsSession, TranscriptionError
from .transcription_bridge import CaptionEvent, TranscriptionBridge
from .translation_cache import CachingTranslator, TranslationCache

__all__ = [
    "BackpressureDecision",
    "BroadcastCoordinator",
    "CachingTranslator",
    "CaptionEvent",
    "ConnectionGate",
    "OutboxBackpressure",
    "Participant",
    "ParticipantOutbox",
    "RateLimiter",
    "RegistryStats",
    "SessionRegistry",
    "SpeechmaticsSession",
    "TranscriptionBridge",
    "TranscriptionError",
    "TranslationCache",
]
