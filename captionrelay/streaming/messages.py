# coding=utf-8
from __future__ import annotations

import base64
import binascii
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

AUDIO_DATA = "AUDIO_DATA"
CAPTION_UPDATE = "CAPTION_UPDATE"
LANGUAGE_SELECT = "LANGUAGE_SELECT"
CONNECTION_STATUS = "CONNECTION_STATUS"
SPEAKER_START = "SPEAKER_START"
SPEAKER_STOP = "SPEAKER_STOP"
ERROR = "ERROR"

INBOUND_TYPES = frozenset({AUDIO_DATA, LANGUAGE_SELECT, SPEAKER_START, SPEAKER_STOP})
OUTBOUND_TYPES = frozenset({CAPTION_UPDATE, CONNECTION_STATUS, ERROR})

ROLE_SPEAKER = "speaker"
ROLE_VIEWER = "viewer"

SUPPORTED_LANGUAGES: Dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "zh": "Chinese (Simplified)",
}
DEFAULT_LANGUAGE = "en"

MAX_AUDIO_BYTES = 1024 * 1024
# base64 expands 3 bytes into 4 chars; anything longer cannot decode under the cap.
MAX_AUDIO_B64_CHARS = 4 * ((MAX_AUDIO_BYTES + 2) // 3)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008


def now_ms() -> int:
    return int(time.time() * 1000)


def is_supported_language(language: Any) -> bool:
    return isinstance(language, str) and language in SUPPORTED_LANGUAGES


@dataclass(frozen=True)
class AudioData:
    data: bytes
    timestamp: int
    type: str = AUDIO_DATA


@dataclass(frozen=True)
class LanguageSelect:
    language: str
    timestamp: int
    type: str = LANGUAGE_SELECT


@dataclass(frozen=True)
class SpeakerStart:
    timestamp: int
    type: str = SPEAKER_START


@dataclass(frozen=True)
class SpeakerStop:
    timestamp: int
    type: str = SPEAKER_STOP


ClientMessage = Union[AudioData, LanguageSelect, SpeakerStart, SpeakerStop]


def _decode_audio(raw: Any) -> bytes:
    if not isinstance(raw, str):
        raise ValueError("AUDIO_DATA requires a base64 string field 'data'")
    if len(raw) > MAX_AUDIO_B64_CHARS:
        raise ValueError("AUDIO_DATA payload exceeds 1 MiB")
    try:
        audio = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"AUDIO_DATA is not valid base64: {e}") from e
    if len(audio) > MAX_AUDIO_BYTES:
        raise ValueError("AUDIO_DATA payload exceeds 1 MiB")
    return audio


def parse_client_message(payload: Any) -> ClientMessage:
    """
    Validate one decoded JSON payload into a typed inbound message.

    Raises ValueError with a client-facing reason for anything that is not a
    well-formed inbound message.
    """
    if not isinstance(payload, dict):
        raise ValueError("message must be a json object")
    msg_type = payload.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ValueError("message type is required")
    if msg_type not in INBOUND_TYPES:
        raise ValueError(f"unsupported message type: {msg_type}")

    timestamp = payload.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or not timestamp:
        timestamp = now_ms()
    timestamp = int(timestamp)

    if msg_type == AUDIO_DATA:
        return AudioData(data=_decode_audio(payload.get("data")), timestamp=timestamp)
    if msg_type == LANGUAGE_SELECT:
        language = payload.get("language")
        if not is_supported_language(language):
            raise ValueError(f"unsupported language: {language}")
        return LanguageSelect(language=language, timestamp=timestamp)
    if msg_type == SPEAKER_START:
        return SpeakerStart(timestamp=timestamp)
    return SpeakerStop(timestamp=timestamp)


def caption_update(text: str, language: str, is_final: bool, timestamp: Optional[int] = None) -> Dict[str, Any]:
    return {
        "type": CAPTION_UPDATE,
        "text": text,
        "language": language,
        "isFinal": bool(is_final),
        "timestamp": int(timestamp if timestamp is not None else now_ms()),
    }


def connection_status(status: str, viewer_count: int) -> Dict[str, Any]:
    return {
        "type": CONNECTION_STATUS,
        "status": status,
        "viewerCount": int(viewer_count),
        "timestamp": now_ms(),
    }


def error_message(message: str) -> Dict[str, Any]:
    return {"type": ERROR, "message": str(message), "timestamp": now_ms()}
