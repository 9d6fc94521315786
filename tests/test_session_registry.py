import asyncio

from captionrelay.streaming.session_registry import SessionRegistry


class _FakeConn:
    def __init__(self, name: str):
        self.name = name
        self.sent = []
        self.closed_with = None

    async def send_json(self, message):
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed_with = (code, reason)


def test_register_viewer_defaults_to_english():
    async def _run():
        reg = SessionRegistry()
        conn = _FakeConn("v")
        p = await reg.register(conn, "viewer")
        return reg, p

    reg, p = asyncio.run(_run())
    assert p.role == "viewer"
    assert p.language == "en"
    assert p.id
    assert reg.stats().viewer_count == 1
    assert reg.stats().has_speaker is False


def test_unknown_role_becomes_viewer():
    async def _run():
        reg = SessionRegistry()
        return await reg.register(_FakeConn("x"), "admin")

    assert asyncio.run(_run()).role == "viewer"


def test_second_speaker_evicts_first_with_policy_close():
    async def _run():
        reg = SessionRegistry()
        old, new = _FakeConn("old"), _FakeConn("new")
        await reg.register(old, "speaker")
        await reg.register(new, "speaker")
        return reg, old, new

    reg, old, new = asyncio.run(_run())
    assert old.closed_with == (1008, "New speaker connected")
    assert old not in reg
    assert reg.speaker.connection is new
    speakers = [p for p in reg.participants() if p.role == "speaker"]
    assert len(speakers) == 1


def test_unregister_clears_speaker_and_is_idempotent():
    async def _run():
        reg = SessionRegistry()
        speaker = _FakeConn("s")
        await reg.register(speaker, "speaker")
        first = reg.unregister(speaker)
        second = reg.unregister(speaker)
        return reg, first, second

    reg, first, second = asyncio.run(_run())
    assert first is not None and first.role == "speaker"
    assert second is None
    assert reg.speaker is None
    assert len(reg) == 0


def test_set_language_validates_and_ignores_unknown():
    async def _run():
        reg = SessionRegistry()
        conn = _FakeConn("v")
        await reg.register(conn, "viewer")
        ok = reg.set_language(conn, "fr")
        bad = reg.set_language(conn, "klingon")
        missing = reg.set_language(_FakeConn("ghost"), "es")
        return reg.get(conn).language, ok, bad, missing

    language, ok, bad, missing = asyncio.run(_run())
    assert language == "fr"
    assert ok is True
    assert bad is False
    assert missing is False


def test_viewers_by_language_groups_viewers_only():
    async def _run():
        reg = SessionRegistry()
        a, b, c, s = _FakeConn("a"), _FakeConn("b"), _FakeConn("c"), _FakeConn("s")
        for conn in (a, b, c):
            await reg.register(conn, "viewer")
        await reg.register(s, "speaker")
        reg.set_language(b, "es")
        reg.set_language(c, "es")
        return reg.viewers_by_language(), (a, b, c)

    grouped, (a, b, c) = asyncio.run(_run())
    assert grouped == {"en": [a], "es": [b, c]}


def test_status_broadcast_reports_speaking_and_viewer_count():
    async def _run():
        reg = SessionRegistry()
        viewer = _FakeConn("v")
        await reg.register(viewer, "viewer")
        await reg.register(_FakeConn("s"), "speaker")
        await reg.flush()
        return viewer.sent

    sent = asyncio.run(_run())
    statuses = [m for m in sent if m["type"] == "CONNECTION_STATUS"]
    assert statuses[0]["status"] == "idle"
    assert statuses[0]["viewerCount"] == 1
    assert statuses[-1]["status"] == "speaking"


def test_close_all_closes_every_connection():
    async def _run():
        reg = SessionRegistry()
        conns = [_FakeConn(str(i)) for i in range(3)]
        for conn in conns:
            await reg.register(conn, "viewer")
        await reg.close_all(1001, "Server shutting down")
        return reg, conns

    reg, conns = asyncio.run(_run())
    assert len(reg) == 0
    assert all(conn.closed_with == (1001, "Server shutting down") for conn in conns)


class _SlowCloseConn(_FakeConn):
    async def close(self, code: int = 1000, reason: str = ""):
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        self.closed_with = (code, reason)


def test_concurrent_speaker_registrations_leave_one_speaker():
    async def _run():
        reg = SessionRegistry()
        a, b, c = _SlowCloseConn("a"), _SlowCloseConn("b"), _SlowCloseConn("c")
        await reg.register(a, "speaker")
        await asyncio.gather(reg.register(b, "speaker"), reg.register(c, "speaker"))
        return reg, a, b, c

    reg, a, b, c = asyncio.run(_run())
    speakers = [p for p in reg.participants() if p.role == "speaker"]
    assert len(speakers) == 1
    assert reg.speaker is speakers[0]
    assert reg.speaker.connection is c
    assert a.closed_with == (1008, "New speaker connected")
    assert b.closed_with == (1008, "New speaker connected")
    assert len(reg) == 1


def test_viewers_register_while_speaker_is_being_replaced():
    async def _run():
        reg = SessionRegistry()
        old, new = _SlowCloseConn("old"), _SlowCloseConn("new")
        viewers = [_FakeConn(f"v{i}") for i in range(3)]
        await reg.register(old, "speaker")
        await asyncio.gather(reg.register(new, "speaker"), *(reg.register(v, "viewer") for v in viewers))
        return reg, new

    reg, new = asyncio.run(_run())
    assert reg.speaker.connection is new
    assert reg.stats().viewer_count == 3
    assert len(reg) == 4
