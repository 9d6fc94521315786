#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import base64
import json
import time
import wave
from pathlib import Path
from typing import Any, Dict, List, Optional

import websockets

from captionrelay.debug.caption_selfcheck import analyze_caption_events, summarize_result


def _read_pcm16_mono_wav(path: Path) -> bytes:
    with wave.open(str(path), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        if channels != 1:
            raise ValueError(f"wav must be mono, got channels={channels}")
        if sample_width != 2:
            raise ValueError(f"wav must be 16-bit PCM, got sampwidth={sample_width}")
        if sample_rate != 16000:
            raise ValueError(f"wav must be 16kHz, got sample_rate={sample_rate}")
        return wf.readframes(wf.getnframes())


def _chunk_pcm16(raw: bytes, chunk_ms: int, sample_rate: int = 16000) -> List[bytes]:
    samples_per_chunk = max(1, int(sample_rate * (chunk_ms / 1000.0)))
    bytes_per_chunk = samples_per_chunk * 2
    return [raw[i : i + bytes_per_chunk] for i in range(0, len(raw), bytes_per_chunk) if raw[i : i + bytes_per_chunk]]


def _with_role(ws_url: str, role: str) -> str:
    sep = "&" if "?" in ws_url else "?"
    return f"{ws_url}{sep}role={role}"


async def _record_viewer(
    ws_url: str,
    language: str,
    events: List[Dict[str, Any]],
    stop: asyncio.Event,
    ready: asyncio.Event,
) -> None:
    async with websockets.connect(_with_role(ws_url, "viewer"), max_size=16 * 1024 * 1024) as ws:
        if language != "en":
            await ws.send(json.dumps({"type": "LANGUAGE_SELECT", "language": language}))
        ready.set()
        while not stop.is_set():
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            except websockets.exceptions.ConnectionClosed:
                break
            if isinstance(raw, bytes):
                continue
            events.append(json.loads(raw))


async def _replay_speaker(ws_url: str, wav_path: Path, chunk_ms: int, realtime_factor: float) -> int:
    chunks = _chunk_pcm16(_read_pcm16_mono_wav(wav_path), chunk_ms=chunk_ms)
    sleep_sec = max(0.0, (chunk_ms / 1000.0) / max(0.01, float(realtime_factor)))
    async with websockets.connect(_with_role(ws_url, "speaker"), max_size=16 * 1024 * 1024) as ws:
        await ws.send(json.dumps({"type": "SPEAKER_START", "timestamp": int(time.time() * 1000)}))
        for chunk in chunks:
            payload = {
                "type": "AUDIO_DATA",
                "data": base64.b64encode(chunk).decode("ascii"),
                "timestamp": int(time.time() * 1000),
            }
            await ws.send(json.dumps(payload))
            if sleep_sec > 0:
                await asyncio.sleep(sleep_sec)
        await ws.send(json.dumps({"type": "SPEAKER_STOP", "timestamp": int(time.time() * 1000)}))
    return len(chunks)


async def _run_session(
    ws_url: str,
    language: str,
    wav_path: Optional[Path],
    chunk_ms: int,
    realtime_factor: float,
    linger_sec: float,
    duration_sec: float,
) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    stop = asyncio.Event()
    ready = asyncio.Event()
    viewer_task = asyncio.create_task(_record_viewer(ws_url, language, events, stop, ready))
    await asyncio.wait_for(ready.wait(), timeout=10.0)

    if wav_path is not None:
        sent = await _replay_speaker(ws_url, wav_path, chunk_ms=chunk_ms, realtime_factor=realtime_factor)
        print(f"replayed chunks={sent}")
        await asyncio.sleep(max(0.0, linger_sec))
    else:
        await asyncio.sleep(max(0.0, duration_sec))

    stop.set()
    await viewer_task
    return events


def _load_events_jsonl(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            events.append(json.loads(text))
    return events


def _save_events_jsonl(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for event in events:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Record a viewer caption stream (optionally replaying a wav as speaker) and self-check it.")
    p.add_argument("--ws-url", default="ws://127.0.0.1:3001/ws")
    p.add_argument("--language", default="en", help="viewer language to subscribe to")
    p.add_argument("--wav", default="", help="16kHz/mono/16-bit PCM wav replayed as the speaker")
    p.add_argument("--chunk-ms", type=int, default=250)
    p.add_argument("--realtime-factor", type=float, default=1.0, help="1.0=realtime, 2.0=2x faster")
    p.add_argument("--linger-sec", type=float, default=8.0, help="keep recording after the replay ends")
    p.add_argument("--duration-sec", type=float, default=60.0, help="recording length when no --wav is given")
    p.add_argument("--events-jsonl", default="", help="save recorded events to jsonl; or load existing with --load")
    p.add_argument("--load", action="store_true", help="analyze --events-jsonl without connecting")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if args.load:
        if events_path is None:
            raise SystemExit("--load requires --events-jsonl")
        events = _load_events_jsonl(events_path)
    else:
        events = asyncio.run(
            _run_session(
                ws_url=str(args.ws_url),
                language=str(args.language),
                wav_path=Path(args.wav).expanduser() if args.wav else None,
                chunk_ms=int(args.chunk_ms),
                realtime_factor=float(args.realtime_factor),
                linger_sec=float(args.linger_sec),
                duration_sec=float(args.duration_sec),
            )
        )
        if events_path is not None:
            _save_events_jsonl(events_path, events)

    result = analyze_caption_events(events, expected_language=str(args.language))
    print(summarize_result(result))


if __name__ == "__main__":
    main()
