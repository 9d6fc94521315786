# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Dict, Iterable, Optional, Tuple

from .messages import DEFAULT_LANGUAGE

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class TranslationCache:
    """
    Bounded (text, language) -> translation store.

    Eviction is by insertion order (FIFO): a hit does not refresh an entry.
    """

    def __init__(self, capacity: int = 1000) -> None:
        self.capacity = max(1, int(capacity))
        self._entries: "OrderedDict[CacheKey, str]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def get(self, text: str, language: str) -> Optional[str]:
        value = self._entries.get((text, language))
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def put(self, text: str, language: str, translated: str) -> None:
        key = (text, language)
        if key in self._entries:
            return
        if len(self._entries) >= self.capacity:
            self._entries.popitem(last=False)
            self.evictions += 1
        self._entries[key] = translated


class CachingTranslator:
    """
    Cache-fronted wrapper around a blocking translation provider.

    The provider exposes translate(text, source_language=..., target_language=...)
    and raises on failure; calls run in a worker thread.
    """

    def __init__(
        self,
        translator: Any,
        cache: Optional[TranslationCache] = None,
        source_language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self.translator = translator
        self.cache = cache if cache is not None else TranslationCache()
        self.source_language = str(source_language or DEFAULT_LANGUAGE)
        self.provider_calls = 0
        self.provider_failures = 0

    async def translate(self, text: str, target_language: str) -> str:
        if target_language == self.source_language:
            return text
        if not str(text or "").strip():
            return text

        cached = self.cache.get(text, target_language)
        if cached is not None:
            return cached
        if self.translator is None:
            return text

        self.provider_calls += 1
        t0 = time.monotonic()
        try:
            out = await asyncio.to_thread(
                self.translator.translate,
                text,
                source_language=self.source_language,
                target_language=target_language,
            )
        except Exception as e:
            self.provider_failures += 1
            logger.warning(
                "translation failed target=%s src_chars=%d err=%s",
                target_language,
                len(text),
                e,
            )
            return text

        out = str(out or "").strip()
        if not out:
            self.provider_failures += 1
            logger.warning("translation returned empty text target=%s src_chars=%d", target_language, len(text))
            return text

        latency = time.monotonic() - t0
        if latency >= 1.0:
            logger.info(
                "translation latency target=%s sec=%.2f src_chars=%d out_chars=%d",
                target_language,
                latency,
                len(text),
                len(out),
            )
        self.cache.put(text, target_language, out)
        return out

    async def translate_batch(self, text: str, languages: Iterable[str]) -> Dict[str, str]:
        results: Dict[str, str] = {self.source_language: text}
        # One provider request at a time.
        for language in sorted(set(languages) - {self.source_language}):
            results[language] = await self.translate(text, language)
        return results
