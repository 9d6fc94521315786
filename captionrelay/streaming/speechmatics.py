# coding=utf-8
from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from contextlib import suppress
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import websockets

logger = logging.getLogger(__name__)

SPEECHMATICS_RT_URL = "wss://eu.rt.speechmatics.com/v2"
SPEECHMATICS_TOKEN_URL = "https://mp.speechmatics.com/v1/api_keys?type=rt"


class TranscriptionError(RuntimeError):
    pass


def _extract_transcript(payload: Dict[str, Any]) -> str:
    words = []
    for result in payload.get("results") or []:
        if not isinstance(result, dict):
            continue
        alternatives = result.get("alternatives") or []
        if not alternatives or not isinstance(alternatives[0], dict):
            continue
        content = alternatives[0].get("content")
        if isinstance(content, str) and content:
            words.append(content)
    return " ".join(words).strip()


def parse_transcript_message(payload: Dict[str, Any]) -> Optional[Tuple[str, bool]]:
    """
    Map one realtime message to (text, is_final), or None when it carries no text.
    """
    kind = payload.get("message")
    if kind == "AddPartialTranscript":
        is_final = False
    elif kind == "AddTranscript":
        is_final = True
    else:
        return None
    text = _extract_transcript(payload)
    if not text:
        return None
    return text, is_final


class SpeechmaticsSession:
    """
    One realtime recognition session over the Speechmatics RT websocket API.

    Lifecycle: connect() -> send_audio()* -> close(); events() yields
    (text, is_final) pairs until the stream ends.
    """

    def __init__(
        self,
        api_key: str,
        url: str = SPEECHMATICS_RT_URL,
        token_url: str = SPEECHMATICS_TOKEN_URL,
        language: str = "en",
        sample_rate: int = 16000,
        max_delay_sec: float = 5.0,
        token_ttl_sec: int = 60,
        timeout_sec: float = 10.0,
    ) -> None:
        self.api_key = str(api_key or "").strip()
        if not self.api_key:
            raise ValueError("speechmatics api key is empty")
        self.url = str(url or SPEECHMATICS_RT_URL).rstrip("?")
        self.token_url = str(token_url or SPEECHMATICS_TOKEN_URL)
        self.language = str(language or "en")
        self.sample_rate = max(8000, int(sample_rate))
        self.max_delay_sec = max(0.7, float(max_delay_sec))
        self.token_ttl_sec = max(10, int(token_ttl_sec))
        self.timeout_sec = max(1.0, float(timeout_sec))
        self._ws: Optional[Any] = None
        self._seq_no = 0

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _fetch_temporary_key(self) -> str:
        body = json.dumps({"ttl": self.token_ttl_sec}).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        req = urllib.request.Request(self.token_url, data=body, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except (urllib.error.URLError, OSError) as e:
            raise TranscriptionError(f"temporary key request failed: {e}") from e
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise TranscriptionError(f"temporary key response is not json: {raw[:200]}") from e
        key = payload.get("key_value") if isinstance(payload, dict) else None
        if not isinstance(key, str) or not key:
            raise TranscriptionError("temporary key response has no key_value")
        return key

    def start_recognition_message(self) -> Dict[str, Any]:
        return {
            "message": "StartRecognition",
            "audio_format": {
                "type": "raw",
                "encoding": "pcm_s16le",
                "sample_rate": self.sample_rate,
            },
            "transcription_config": {
                "language": self.language,
                "operating_point": "standard",
                "max_delay": self.max_delay_sec,
                "enable_partials": True,
            },
        }

    async def connect(self) -> None:
        if self._ws is not None:
            return
        key = await asyncio.to_thread(self._fetch_temporary_key)
        try:
            ws = await asyncio.wait_for(
                websockets.connect(f"{self.url}?jwt={key}", max_size=16 * 1024 * 1024),
                timeout=self.timeout_sec,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise TranscriptionError(f"realtime connect failed: {e}") from e
        await ws.send(json.dumps(self.start_recognition_message()))
        self._ws = ws
        self._seq_no = 0
        logger.info("speechmatics connected url=%s language=%s", self.url, self.language)

    async def send_audio(self, chunk: bytes) -> None:
        ws = self._ws
        if ws is None:
            raise TranscriptionError("session is not connected")
        await ws.send(bytes(chunk))
        self._seq_no += 1

    async def events(self) -> AsyncIterator[Tuple[str, bool]]:
        ws = self._ws
        if ws is None:
            return
        async for raw in ws:
            if isinstance(raw, bytes):
                continue
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("speechmatics sent non-json frame chars=%d", len(raw))
                continue
            if not isinstance(payload, dict):
                continue
            kind = payload.get("message")
            parsed = parse_transcript_message(payload)
            if parsed is not None:
                yield parsed
            elif kind == "RecognitionStarted":
                logger.info("speechmatics recognition started id=%s", payload.get("id"))
            elif kind == "EndOfTranscript":
                logger.info("speechmatics end of transcript")
                return
            elif kind == "Error":
                logger.error("speechmatics error type=%s reason=%s", payload.get("type"), payload.get("reason"))
            elif kind == "Warning":
                logger.warning("speechmatics warning type=%s reason=%s", payload.get("type"), payload.get("reason"))

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is None:
            return
        with suppress(Exception):
            await ws.send(json.dumps({"message": "EndOfStream", "last_seq_no": self._seq_no}))
        with suppress(Exception):
            await ws.close()
