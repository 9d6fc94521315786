import asyncio

from captionrelay.streaming.speechmatics import TranscriptionError
from captionrelay.streaming.transcription_bridge import TranscriptionBridge


class _FakeSession:
    def __init__(self, fail: bool = False, connect_delay: float = 0.0):
        self.fail = fail
        self.connect_delay = connect_delay
        self.audio = []
        self.closed = 0
        self.queue = None

    async def connect(self):
        await asyncio.sleep(self.connect_delay)
        if self.fail:
            raise TranscriptionError("upstream refused")
        self.queue = asyncio.Queue()

    async def send_audio(self, chunk):
        self.audio.append(chunk)

    def emit(self, text, is_final):
        self.queue.put_nowait((text, is_final))

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is None:
                return
            yield item

    async def close(self):
        self.closed += 1
        if self.queue is not None:
            self.queue.put_nowait(None)


class _Factory:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sessions = []

    def __call__(self):
        session = _FakeSession(**self.kwargs)
        self.sessions.append(session)
        return session


def test_concurrent_ensure_started_opens_one_session():
    factory = _Factory(connect_delay=0.02)

    async def _run():
        bridge = TranscriptionBridge(factory, idle_timeout_sec=0)
        results = await asyncio.gather(*(bridge.ensure_started() for _ in range(5)))
        state = bridge.state
        await bridge.stop()
        return results, state

    results, state = asyncio.run(_run())
    assert results == [True] * 5
    assert state == "started"
    assert len(factory.sessions) == 1


def test_stop_sends_end_of_stream_once_and_resets():
    factory = _Factory()

    async def _run():
        bridge = TranscriptionBridge(factory, idle_timeout_sec=0)
        await bridge.ensure_started()
        await bridge.stop()
        await bridge.stop()
        return bridge.state

    assert asyncio.run(_run()) == "idle"
    assert factory.sessions[0].closed == 1


def test_stop_waits_for_in_flight_start():
    factory = _Factory(connect_delay=0.05)

    async def _run():
        bridge = TranscriptionBridge(factory, idle_timeout_sec=0)
        start = asyncio.create_task(bridge.ensure_started())
        await asyncio.sleep(0)
        assert bridge.state == "starting"
        await bridge.stop()
        return await start, bridge.state

    started, state = asyncio.run(_run())
    assert started is True
    assert state == "idle"
    assert factory.sessions[0].closed == 1


def test_connect_failure_returns_to_idle_and_allows_retry():
    factory = _Factory(fail=True)

    async def _run():
        bridge = TranscriptionBridge(factory, idle_timeout_sec=0)
        first = await bridge.ensure_started()
        state = bridge.state
        factory.kwargs["fail"] = False
        second = await bridge.ensure_started()
        await bridge.stop()
        return first, state, second

    first, state, second = asyncio.run(_run())
    assert first is False
    assert state == "idle"
    assert second is True
    assert len(factory.sessions) == 2


def test_missing_provider_never_starts():
    async def _run():
        bridge = TranscriptionBridge(None)
        return await bridge.ensure_started(), await bridge.send_audio(b"\x00\x00"), bridge.state

    assert asyncio.run(_run()) == (False, False, "idle")


def test_audio_forwarded_and_events_published():
    factory = _Factory()

    async def _run():
        bridge = TranscriptionBridge(factory, idle_timeout_sec=0)
        await bridge.ensure_started()
        forwarded = await bridge.send_audio(b"\x01\x02")
        factory.sessions[0].emit("hello", False)
        factory.sessions[0].emit("  ", True)
        factory.sessions[0].emit("hello world", True)
        first = await asyncio.wait_for(bridge.events.get(), timeout=1.0)
        second = await asyncio.wait_for(bridge.events.get(), timeout=1.0)
        await bridge.stop()
        return forwarded, first, second

    forwarded, first, second = asyncio.run(_run())
    assert forwarded is True
    assert factory.sessions[0].audio == [b"\x01\x02"]
    assert (first.text, first.is_final) == ("hello", False)
    assert (second.text, second.is_final) == ("hello world", True)


def test_idle_timeout_closes_session():
    factory = _Factory()

    async def _run():
        bridge = TranscriptionBridge(factory, idle_timeout_sec=0.1)
        await bridge.ensure_started()
        await asyncio.sleep(0.4)
        return bridge.state

    assert asyncio.run(_run()) == "idle"
    assert factory.sessions[0].closed == 1


def test_upstream_end_returns_bridge_to_idle():
    factory = _Factory()

    async def _run():
        bridge = TranscriptionBridge(factory, idle_timeout_sec=0)
        await bridge.ensure_started()
        factory.sessions[0].queue.put_nowait(None)
        for _ in range(50):
            if bridge.state == "idle":
                break
            await asyncio.sleep(0.01)
        return bridge.state, await bridge.send_audio(b"\x00\x00")

    state, forwarded = asyncio.run(_run())
    assert state == "idle"
    assert forwarded is False


def test_on_stopped_reports_self_initiated_stops_only():
    factory = _Factory()
    reasons = []

    async def _run():
        bridge = TranscriptionBridge(factory, idle_timeout_sec=0.1)
        bridge.on_stopped = reasons.append
        await bridge.ensure_started()
        await asyncio.sleep(0.4)
        await bridge.ensure_started()
        factory.sessions[1].queue.put_nowait(None)
        await asyncio.sleep(0.05)
        await bridge.ensure_started()
        await bridge.stop(reason="speaker_stop")

    asyncio.run(_run())
    assert reasons == ["idle_timeout", "stream_ended"]
    assert len(factory.sessions) == 3
