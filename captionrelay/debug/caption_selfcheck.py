from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from captionrelay.streaming.messages import CAPTION_UPDATE


@dataclass
class CaptionSelfcheckResult:
    interim_count: int
    final_count: int
    max_chars: int
    out_of_order: int
    language_mismatches: int
    stale_interims: int
    examples: List[Dict[str, Any]]


def analyze_caption_events(
    events: Iterable[Dict[str, Any]],
    expected_language: Optional[str] = None,
) -> CaptionSelfcheckResult:
    interim_count = 0
    final_count = 0
    max_chars = 0
    out_of_order = 0
    mismatches = 0
    stale = 0
    prev_ts: Optional[int] = None
    last_final = ""
    examples: List[Dict[str, Any]] = []

    def _example(entry: Dict[str, Any]) -> None:
        if len(examples) < 8:
            examples.append(entry)

    for idx, msg in enumerate(events):
        if msg.get("type") != CAPTION_UPDATE:
            continue

        text = str(msg.get("text", "") or "").strip()
        is_final = bool(msg.get("isFinal"))
        language = msg.get("language")
        max_chars = max(max_chars, len(text))
        if is_final:
            final_count += 1
        else:
            interim_count += 1

        ts = msg.get("timestamp")
        if isinstance(ts, (int, float)) and not isinstance(ts, bool):
            if prev_ts is not None and ts < prev_ts:
                out_of_order += 1
                _example({"kind": "out_of_order", "index": idx, "prev": prev_ts, "timestamp": ts})
            prev_ts = int(ts)

        if expected_language is not None and language != expected_language:
            mismatches += 1
            _example({"kind": "language_mismatch", "index": idx, "language": language, "text": text[:160]})

        # A final closes its utterance; repeating it as an interim means a superseded update leaked through.
        if not is_final and last_final and text == last_final:
            stale += 1
            _example({"kind": "stale_interim", "index": idx, "text": text[:160]})
        if is_final:
            last_final = text

    return CaptionSelfcheckResult(
        interim_count=interim_count,
        final_count=final_count,
        max_chars=max_chars,
        out_of_order=out_of_order,
        language_mismatches=mismatches,
        stale_interims=stale,
        examples=examples,
    )


def summarize_result(result: CaptionSelfcheckResult) -> str:
    lines = [
        f"interims={result.interim_count}",
        f"finals={result.final_count}",
        f"max_chars={result.max_chars}",
        f"out_of_order={result.out_of_order}",
        f"language_mismatches={result.language_mismatches}",
        f"stale_interims={result.stale_interims}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
