# coding=utf-8
# Copyright 2026 The Alibaba Qwen team.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Live caption relay server: one speaker, many viewers, over WebSocket.
"""
import argparse
import asyncio
import json
import logging
import os
import urllib.parse
import urllib.request
from contextlib import asynccontextmanager, suppress
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, WebSocket
from captionrelay.streaming.coordinator import BroadcastCoordinator
from captionrelay.streaming.messages import (
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    DEFAULT_LANGUAGE,
    ROLE_SPEAKER,
    ROLE_VIEWER,
    SUPPORTED_LANGUAGES,
    connection_status,
    error_message,
    parse_client_message,
)
from captionrelay.streaming.rate_limiter import ConnectionGate, RateLimiter
from captionrelay.streaming.session_registry import SessionRegistry
from captionrelay.streaming.speechmatics import SPEECHMATICS_RT_URL, SpeechmaticsSession
from captionrelay.streaming.transcription_bridge import TranscriptionBridge
from captionrelay.streaming.translation_cache import CachingTranslator, TranslationCache

logger = logging.getLogger(__name__)
MYMEMORY_URL = "https://api.mymemory.translated.net/get"


class MyMemoryTranslator:
    """
    Translation client for the public MyMemory HTTP API.
    """

    def __init__(self, base_url: str = MYMEMORY_URL, timeout_sec: float = 10.0) -> None:
        self.base_url = str(base_url or MYMEMORY_URL).strip()
        self.timeout_sec = max(1.0, float(timeout_sec))

    @staticmethod
    def _provider_code(language: str) -> str:
        return "zh-CN" if language == "zh" else language

    def translate(
        self,
        text: str,
        source_language: Optional[str] = None,
        target_language: Optional[str] = None,
    ) -> str:
        src = str(text or "").strip()
        if not src:
            return ""
        source = self._provider_code(str(source_language or DEFAULT_LANGUAGE))
        target = self._provider_code(str(target_language or DEFAULT_LANGUAGE))
        query = urllib.parse.urlencode({"q": src, "langpair": f"{source}|{target}"})
        req = urllib.request.Request(
            f"{self.base_url}?{query}",
            headers={"Accept": "application/json"},
            method="GET",
        )
        with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
        payload = json.loads(raw)
        data = payload.get("responseData") if isinstance(payload, dict) else None
        translated = data.get("translatedText") if isinstance(data, dict) else None
        status = payload.get("responseStatus") if isinstance(payload, dict) else None
        if str(status) != "200" or not isinstance(translated, str) or not translated.strip():
            raise RuntimeError(f"mymemory translation failed status={status}")
        return translated.strip()


class OpenAIAPITranslator:
    """
    Translation client using an OpenAI-compatible Chat Completions HTTP API.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        max_new_tokens: int = 256,
        timeout_sec: float = 10.0,
        api_key: str = "",
    ) -> None:
        self.base_url = str(base_url or "").strip()
        if not self.base_url:
            raise ValueError("translation api base_url is empty")
        self.model = str(model or "").strip()
        if not self.model:
            raise ValueError("translation api model is empty")
        self.max_new_tokens = max(8, int(max_new_tokens))
        self.timeout_sec = max(1.0, float(timeout_sec))
        self.api_key = str(api_key or "").strip()

        normalized = self.base_url.rstrip("/")
        if normalized.endswith("/chat/completions"):
            self.chat_url = normalized
        elif normalized.endswith("/v1"):
            self.chat_url = f"{normalized}/chat/completions"
        else:
            self.chat_url = f"{normalized}/v1/chat/completions"

    def _build_prompt(self, text: str, source_language: str, target_language: str) -> str:
        source = SUPPORTED_LANGUAGES.get(source_language, source_language)
        target = SUPPORTED_LANGUAGES.get(target_language, target_language)
        return (
            f"Translate the following {source} text into {target}.\n"
            f"Stay faithful to the original, keep proper nouns, and output only the translation.\n\n"
            f"Text:\n{text}"
        )

    def _extract_content(self, payload: Dict[str, Any]) -> str:
        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message", {}) if isinstance(choices[0], dict) else {}
            content = message.get("content")
            if isinstance(content, str):
                return content.strip()
            if isinstance(content, list):
                chunks = []
                for item in content:
                    if isinstance(item, str):
                        chunks.append(item)
                    elif isinstance(item, dict) and isinstance(item.get("text"), str):
                        chunks.append(item["text"])
                return "".join(chunks).strip()
        return ""

    def translate(
        self,
        text: str,
        source_language: Optional[str] = None,
        target_language: Optional[str] = None,
    ) -> str:
        src = str(text or "").strip()
        if not src:
            return ""
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": self._build_prompt(
                        src,
                        source_language=str(source_language or DEFAULT_LANGUAGE),
                        target_language=str(target_language or DEFAULT_LANGUAGE),
                    ),
                }
            ],
            "max_tokens": self.max_new_tokens,
            "temperature": 0,
            "top_p": 1,
            "stream": False,
        }
        data = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        req = urllib.request.Request(self.chat_url, data=data, headers=headers, method="POST")
        with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
        return self._extract_content(json.loads(raw))


def _parse_json_message(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid json: {e}") from e
    if not isinstance(payload, dict):
        raise ValueError("json message must be an object")
    return payload


def _parse_role(raw: Any) -> str:
    return ROLE_SPEAKER if str(raw or "").strip().lower() == ROLE_SPEAKER else ROLE_VIEWER


def _client_ip(websocket: Any) -> str:
    forwarded = websocket.headers.get("x-forwarded-for") or ""
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if websocket.client is not None and websocket.client.host:
        return str(websocket.client.host)
    return "unknown"


class _ConnectionTeardown:
    """
    Releases a connection's registry entry and gate slot exactly once.
    """

    def __init__(self, coordinator: BroadcastCoordinator, gate: ConnectionGate, websocket: Any, ip: str) -> None:
        self.coordinator = coordinator
        self.gate = gate
        self.websocket = websocket
        self.ip = ip
        self.done = False

    async def run(self) -> None:
        if self.done:
            return
        self.done = True
        self.gate.decrement(self.ip)
        await self.coordinator.disconnect(self.websocket)


def _build_session_factory(args: argparse.Namespace) -> Optional[Callable[[], SpeechmaticsSession]]:
    api_key = str(getattr(args, "speechmatics_api_key", "") or "").strip()
    if not api_key:
        return None

    def factory() -> SpeechmaticsSession:
        return SpeechmaticsSession(
            api_key=api_key,
            url=getattr(args, "speechmatics_url", SPEECHMATICS_RT_URL),
            language=getattr(args, "transcription_language", DEFAULT_LANGUAGE),
            sample_rate=int(getattr(args, "sample_rate", 16000)),
        )

    return factory


def _build_translator(args: argparse.Namespace) -> Any:
    backend = str(getattr(args, "translation_backend", "mymemory") or "mymemory").strip().lower()
    timeout_sec = float(getattr(args, "translation_timeout_sec", 10.0))
    if backend == "openai_api":
        logger.info(
            "loading openai-compatible translator base_url=%s model=%s",
            args.translation_api_base_url,
            args.translation_api_model,
        )
        return OpenAIAPITranslator(
            base_url=args.translation_api_base_url,
            model=args.translation_api_model,
            timeout_sec=timeout_sec,
            api_key=args.translation_api_key,
        )
    logger.info("using mymemory translator")
    return MyMemoryTranslator(timeout_sec=timeout_sec)


def _create_app(
    args: argparse.Namespace,
    session_factory: Optional[Callable[[], Any]] = None,
    translator: Optional[Any] = None,
) -> FastAPI:
    source_language = str(getattr(args, "transcription_language", DEFAULT_LANGUAGE) or DEFAULT_LANGUAGE)
    registry = SessionRegistry(
        target_depth=int(getattr(args, "outbox_target_depth", 32)),
        max_depth=int(getattr(args, "outbox_max_depth", 128)),
    )
    caching_translator = CachingTranslator(
        translator,
        cache=TranslationCache(int(getattr(args, "translation_cache_size", 1000))),
        source_language=source_language,
    )
    bridge = TranscriptionBridge(
        session_factory,
        idle_timeout_sec=float(getattr(args, "transcription_idle_timeout_sec", 30.0)),
    )
    coordinator = BroadcastCoordinator(registry, caching_translator, bridge)
    window_sec = float(getattr(args, "rate_limit_window_sec", 60.0))
    limiter = RateLimiter(
        window_sec=window_sec,
        max_requests=int(getattr(args, "rate_limit_max_requests", 30)),
    )
    gate = ConnectionGate(max_connections=int(getattr(args, "max_connections_per_ip", 5)))

    async def _sweep_rate_limits() -> None:
        while True:
            await asyncio.sleep(max(1.0, window_sec))
            removed = limiter.cleanup()
            if removed:
                logger.debug("rate limiter cleanup removed=%d", removed)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        coordinator.start()
        sweeper = asyncio.create_task(_sweep_rate_limits())
        logger.info(
            "relay ready transcription=%s source_language=%s",
            "configured" if bridge.available else "disabled",
            source_language,
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            await coordinator.shutdown()

    app = FastAPI(title="captionrelay", lifespan=lifespan)
    app.state.registry = registry
    app.state.coordinator = coordinator
    app.state.bridge = bridge
    app.state.limiter = limiter
    app.state.gate = gate

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        stats = registry.stats()
        return {
            "status": "ok",
            "participants": stats.total_count,
            "viewers": stats.viewer_count,
            "hasSpeaker": stats.has_speaker,
            "transcription": bridge.state,
        }

    @app.websocket("/ws")
    async def ws_relay(websocket: WebSocket) -> None:
        ip = _client_ip(websocket)
        role = _parse_role(websocket.query_params.get("role"))

        rejection = None
        if not gate.check_connection_allowed(ip):
            rejection = "Too many connections from this address"
        elif not limiter.is_allowed(ip):
            rejection = "Rate limit exceeded"
        if rejection is not None:
            logger.warning("ws rejected ip=%s role=%s reason=%s", ip, role, rejection)
            await websocket.accept()
            with suppress(Exception):
                await websocket.send_json(error_message(rejection))
                await websocket.close(code=CLOSE_POLICY_VIOLATION)
            return

        # Check and claim happen with no await in between.
        gate.increment(ip)
        teardown = _ConnectionTeardown(coordinator, gate, websocket, ip)
        peer = ip
        received = 0
        rejected = 0
        try:
            await websocket.accept()
            participant = await coordinator.connect(websocket, role)
            peer = participant.id
            logger.info("ws open peer=%s ip=%s role=%s", peer, ip, role)
            stats = registry.stats()
            registry.send(websocket, connection_status("connected", stats.viewer_count))

            while True:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
                if websocket not in registry:
                    # Replaced as speaker; the socket is already closing.
                    break

                text = msg.get("text")
                if text is None:
                    rejected += 1
                    registry.send(websocket, error_message("binary frames are not supported"))
                    continue

                received += 1
                try:
                    message = parse_client_message(_parse_json_message(text))
                except ValueError as e:
                    rejected += 1
                    logger.info("ws invalid message peer=%s err=%s", peer, e)
                    registry.send(websocket, error_message(str(e)))
                    continue
                await coordinator.handle_message(websocket, message)
        except Exception:
            logger.exception("ws handler failed peer=%s", peer)
        finally:
            await teardown.run()
            with suppress(Exception):
                await websocket.close(code=CLOSE_NORMAL)
            logger.info("ws close peer=%s ip=%s received=%d rejected=%d", peer, ip, received, rejected)

    return app


def _env(name: str, default: str) -> str:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="captionrelay live caption relay (WebSocket)")
    p.add_argument("--host", default=_env("WS_HOST", "0.0.0.0"), help="Bind host")
    p.add_argument("--port", type=int, default=_env("WS_PORT", "3001"), help="Bind port")

    p.add_argument(
        "--speechmatics-api-key",
        default=_env("SPEECHMATICS_API_KEY", ""),
        help="Speechmatics API key; transcription is disabled when empty",
    )
    p.add_argument(
        "--speechmatics-url",
        default=_env("SPEECHMATICS_RT_URL", SPEECHMATICS_RT_URL),
        help="Speechmatics realtime websocket URL",
    )
    p.add_argument(
        "--transcription-language",
        default=_env("TRANSCRIPTION_LANGUAGE", DEFAULT_LANGUAGE),
        choices=sorted(SUPPORTED_LANGUAGES),
        help="Language spoken by the speaker; captions in this language are never translated",
    )
    p.add_argument("--sample-rate", type=int, default=16000, help="PCM16LE sample rate of speaker audio")
    p.add_argument(
        "--transcription-idle-timeout-sec",
        type=float,
        default=_env("TRANSCRIPTION_IDLE_TIMEOUT_SEC", "30"),
        help="Close the upstream session after this many seconds without audio (0 disables)",
    )

    p.add_argument(
        "--translation-backend",
        default=_env("TRANSLATION_BACKEND", "mymemory"),
        choices=["mymemory", "openai_api"],
        help="Translation backend: MyMemory HTTP API or an OpenAI-compatible HTTP API",
    )
    p.add_argument("--translation-api-key", default=_env("TRANSLATION_API_KEY", ""), help="Bearer token for openai_api")
    p.add_argument(
        "--translation-api-base-url",
        default=_env("TRANSLATION_API_BASE_URL", "http://127.0.0.1:8001"),
        help="OpenAI-compatible base URL (used when --translation-backend=openai_api)",
    )
    p.add_argument(
        "--translation-api-model",
        default=_env("TRANSLATION_API_MODEL", "gpt-4o-mini"),
        help="Model name sent to the OpenAI-compatible API",
    )
    p.add_argument("--translation-timeout-sec", type=float, default=10.0, help="Translation HTTP timeout")
    p.add_argument(
        "--translation-cache-size",
        type=int,
        default=_env("TRANSLATION_CACHE_SIZE", "1000"),
        help="Maximum cached (text, language) translations",
    )

    p.add_argument(
        "--max-connections-per-ip",
        type=int,
        default=_env("MAX_CONNECTIONS_PER_IP", "5"),
        help="Concurrent websocket connections allowed per client IP",
    )
    p.add_argument(
        "--rate-limit-window-sec",
        type=float,
        default=_env("RATE_LIMIT_WINDOW_SEC", "60"),
        help="Connection attempt rate limit window",
    )
    p.add_argument(
        "--rate-limit-max-requests",
        type=int,
        default=_env("RATE_LIMIT_MAX_REQUESTS", "30"),
        help="Connection attempts allowed per IP per window",
    )
    p.add_argument("--outbox-target-depth", type=int, default=32, help="Per-connection queue depth where interim captions start being superseded")
    p.add_argument("--outbox-max-depth", type=int, default=128, help="Per-connection queue depth where oldest interim captions are dropped")

    p.add_argument("--ssl-certfile", default=None, help="Path to TLS certificate file (enables WSS)")
    p.add_argument("--ssl-keyfile", default=None, help="Path to TLS private key file")
    p.add_argument(
        "--log-level",
        default=_env("LOG_LEVEL", "info").lower(),
        choices=["critical", "error", "warning", "info", "debug"],
    )
    return p.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    session_factory = _build_session_factory(args)
    if session_factory is None:
        logger.warning("SPEECHMATICS_API_KEY is not set; speaker audio will not be transcribed")
    translator = _build_translator(args)

    app = _create_app(args, session_factory=session_factory, translator=translator)

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )


if __name__ == "__main__":
    main()
