import io
import json

import pytest

from captionrelay.streaming.speechmatics import (
    SpeechmaticsSession,
    TranscriptionError,
    parse_transcript_message,
)


def _transcript(kind, *words):
    return {
        "message": kind,
        "results": [{"alternatives": [{"content": w, "confidence": 0.9}]} for w in words],
    }


def test_parse_partial_is_interim():
    assert parse_transcript_message(_transcript("AddPartialTranscript", "hello")) == ("hello", False)


def test_parse_final_joins_words():
    assert parse_transcript_message(_transcript("AddTranscript", "hello", "world")) == ("hello world", True)


def test_parse_ignores_empty_and_unrelated_messages():
    assert parse_transcript_message(_transcript("AddTranscript")) is None
    assert parse_transcript_message({"message": "RecognitionStarted"}) is None
    assert parse_transcript_message({"message": "AddTranscript", "results": [{"alternatives": []}]}) is None


def test_session_requires_api_key():
    with pytest.raises(ValueError):
        SpeechmaticsSession(api_key="  ")


def test_start_recognition_message_shape():
    msg = SpeechmaticsSession(api_key="k", language="en", sample_rate=16000).start_recognition_message()
    assert msg["message"] == "StartRecognition"
    assert msg["audio_format"] == {"type": "raw", "encoding": "pcm_s16le", "sample_rate": 16000}
    assert msg["transcription_config"]["enable_partials"] is True
    assert msg["transcription_config"]["max_delay"] == 5.0
    assert msg["transcription_config"]["operating_point"] == "standard"


class _Resp:
    def __init__(self, body: str):
        self._buf = io.BytesIO(body.encode("utf-8"))

    def read(self):
        return self._buf.read()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_fetch_temporary_key_posts_ttl(monkeypatch):
    seen = {}

    def _fake_urlopen(req, timeout=None):
        seen["url"] = req.full_url
        seen["body"] = json.loads(req.data.decode("utf-8"))
        seen["auth"] = req.get_header("Authorization")
        return _Resp('{"key_value": "temp-key"}')

    monkeypatch.setattr("urllib.request.urlopen", _fake_urlopen)
    session = SpeechmaticsSession(api_key="secret")
    assert session._fetch_temporary_key() == "temp-key"
    assert seen["url"].endswith("/v1/api_keys?type=rt")
    assert seen["body"] == {"ttl": 60}
    assert seen["auth"] == "Bearer secret"


def test_fetch_temporary_key_without_key_value_raises(monkeypatch):
    monkeypatch.setattr("urllib.request.urlopen", lambda req, timeout=None: _Resp('{"detail": "unauthorized"}'))
    with pytest.raises(TranscriptionError):
        SpeechmaticsSession(api_key="secret")._fetch_temporary_key()
