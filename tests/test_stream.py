"""Tests for webterm.server.stream.StreamHandler over an in-memory transport."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeTransport, wait_for, wait_until
from webterm.pty import engine
from webterm.pty.manager import SessionManager
from webterm.pty.session import Session
from webterm.server.stream import StreamHandler


def start(
    session: Session, transport: FakeTransport, ping_interval: float = 30.0
) -> asyncio.Task:
    handler = StreamHandler(session, transport, ping_interval=ping_interval)
    return asyncio.create_task(handler.run())


async def finish(transport: FakeTransport, task: asyncio.Task) -> None:
    transport.disconnect()
    await wait_for(task)


async def echo_session(manager: SessionManager, name: str, history: bytes) -> Session:
    s = await manager.create(name)
    await engine.write(s, history)
    await wait_until(lambda: s.scrollback_snapshot() == history)
    return s


# ---------------------------------------------------------------------------
# replay
# ---------------------------------------------------------------------------


class TestReplay:
    async def test_scrollback_sent_first(self, manager: SessionManager) -> None:
        s = await echo_session(manager, "replay", b"earlier output")
        t = FakeTransport()
        task = start(s, t)

        first = await t.next_message()
        assert first["type"] == "output"
        assert t.output_bytes() == b"earlier output"

        t.push_input(b" later")
        await wait_until(lambda: t.output_bytes() == b"earlier output later")
        await finish(t, task)

    async def test_empty_scrollback_sends_nothing(
        self, manager: SessionManager
    ) -> None:
        s = await manager.create("fresh")
        t = FakeTransport()
        task = start(s, t)
        await wait_until(lambda: s.connected)
        await asyncio.sleep(0.05)
        assert t.sent == []
        await finish(t, task)

    async def test_failed_replay_ends_connection(
        self, manager: SessionManager
    ) -> None:
        s = await echo_session(manager, "broken-pipe", b"history")
        t = FakeTransport(fail_sends=True)
        await wait_for(start(s, t))
        assert s.connected is False
        assert s.alive


# ---------------------------------------------------------------------------
# client messages
# ---------------------------------------------------------------------------


class TestClientMessages:
    async def test_input_is_echoed_back(self, manager: SessionManager) -> None:
        s = await manager.create("echo")
        t = FakeTransport()
        task = start(s, t)
        await wait_until(lambda: s.connected)

        t.push_input(b"ls -la\n")
        await wait_until(lambda: t.output_bytes() == b"ls -la\n")
        assert s.scrollback_snapshot() == b"ls -la\n"
        await finish(t, task)

    async def test_unknown_type_is_ignored(self, manager: SessionManager) -> None:
        s = await manager.create("unknown")
        t = FakeTransport()
        task = start(s, t)

        t.push({"type": "bogus", "data": "whatever"})
        t.push_input(b"still here")
        await wait_until(lambda: t.output_bytes() == b"still here")
        assert not task.done()
        await finish(t, task)

    async def test_frame_without_type_is_ignored(
        self, manager: SessionManager
    ) -> None:
        s = await manager.create("typeless")
        t = FakeTransport()
        task = start(s, t)

        t.push({"data": ""})
        t.push_input(b"next")
        await wait_until(lambda: t.output_bytes() == b"next")
        assert not task.done()
        await finish(t, task)

    async def test_invalid_base64_is_ignored(self, manager: SessionManager) -> None:
        s = await manager.create("b64")
        t = FakeTransport()
        task = start(s, t)

        t.push({"type": "input", "data": "not base64!!"})
        t.push_input(b"ok")
        await wait_until(lambda: t.output_bytes() == b"ok")
        await finish(t, task)

    async def test_malformed_frame_ends_connection(
        self, manager: SessionManager
    ) -> None:
        s = await manager.create("garbage")
        t = FakeTransport()
        task = start(s, t)

        t.push("{not json")
        await wait_for(task)
        assert s.connected is False
        assert s.alive

    async def test_resize_forwarded(
        self, manager: SessionManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        calls: list[tuple[int, int]] = []
        monkeypatch.setattr(
            engine, "resize", lambda session, cols, rows: calls.append((cols, rows))
        )
        s = await manager.create("resize")
        t = FakeTransport()
        task = start(s, t)

        t.push({"type": "resize", "cols": 0, "rows": 24})
        t.push({"type": "resize", "cols": 80})
        t.push({"type": "resize", "cols": 132, "rows": 43})
        await wait_until(lambda: calls == [(132, 43)])
        await finish(t, task)

    async def test_failed_resize_keeps_connection(
        self, manager: SessionManager
    ) -> None:
        # Pipes are not terminals, so the real resize fails
        s = await manager.create("bad-resize")
        t = FakeTransport()
        task = start(s, t)

        t.push({"type": "resize", "cols": 80, "rows": 24})
        t.push_input(b"after")
        await wait_until(lambda: t.output_bytes() == b"after")
        await finish(t, task)

    async def test_write_failure_ends_connection(
        self, manager: SessionManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def failing_write(session: Session, data: bytes) -> int:
            raise OSError("input/output error")

        monkeypatch.setattr(engine, "write", failing_write)
        s = await manager.create("write-fail")
        t = FakeTransport()
        task = start(s, t)

        t.push_input(b"x")
        await wait_for(task)
        assert s.connected is False
        assert s.alive


# ---------------------------------------------------------------------------
# connection lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_peer_disconnect_detaches_only(
        self, manager: SessionManager
    ) -> None:
        s = await manager.create("detach")
        t = FakeTransport()
        task = start(s, t)
        await wait_until(lambda: s.connected)

        await finish(t, task)
        assert s.connected is False
        assert s.alive
        assert manager.get(s.id) is s

    async def test_cancellation_detaches_and_propagates(
        self, manager: SessionManager
    ) -> None:
        s = await manager.create("cancelled")
        t = FakeTransport()
        task = start(s, t, ping_interval=0.02)
        await wait_until(lambda: s.connected)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await wait_for(task)
        assert s.connected is False
        assert s.alive
        count = t.pings
        await asyncio.sleep(0.1)
        assert t.pings == count

    async def test_new_connection_displaces_old(
        self, manager: SessionManager
    ) -> None:
        s = await manager.create("shared")
        old = FakeTransport()
        old_task = start(s, old)
        await wait_until(lambda: s.connected)

        new = FakeTransport()
        new_task = start(s, new)

        await wait_for(old.closed.wait())
        await wait_for(old_task)
        assert all(m["type"] != "closed" for m in old.sent)
        assert s.connected is True

        new.push_input(b"for the new owner")
        await wait_until(lambda: new.output_bytes() == b"for the new owner")
        assert old.output_bytes() == b""
        await finish(new, new_task)

    async def test_reattach_replays_history(self, manager: SessionManager) -> None:
        s = await manager.create("history")
        first = FakeTransport()
        task = start(s, first)
        first.push_input(b"typed before")
        await wait_until(lambda: first.output_bytes() == b"typed before")
        await finish(first, task)

        second = FakeTransport()
        task = start(s, second)
        await second.next_message()
        assert second.output_bytes() == b"typed before"
        await finish(second, task)

    async def test_kill_sends_closed_notice(self, manager: SessionManager) -> None:
        s = await manager.create("doomed")
        t = FakeTransport()
        task = start(s, t)
        await wait_until(lambda: s.connected)

        manager.kill(s.id)

        await wait_for(t.closed.wait())
        await wait_for(task)
        assert t.sent[-1] == {"type": "closed"}

    async def test_process_exit_sends_closed_notice(
        self, manager: SessionManager
    ) -> None:
        s = await manager.create("exits")
        t = FakeTransport()
        task = start(s, t)
        await wait_until(lambda: s.connected)

        s.close_pty()

        await wait_for(task)
        assert {"type": "closed"} in t.sent
        await wait_until(lambda: manager.get(s.id) is None)


# ---------------------------------------------------------------------------
# keepalive
# ---------------------------------------------------------------------------


class TestKeepalive:
    async def test_pings_on_interval(self, manager: SessionManager) -> None:
        s = await manager.create("idle")
        t = FakeTransport()
        task = start(s, t, ping_interval=0.02)
        await wait_until(lambda: t.pings >= 3)
        await finish(t, task)

    async def test_no_ping_after_disconnect(self, manager: SessionManager) -> None:
        s = await manager.create("gone")
        t = FakeTransport()
        task = start(s, t, ping_interval=0.02)
        await wait_until(lambda: t.pings >= 1)
        await finish(t, task)
        count = t.pings
        await asyncio.sleep(0.1)
        assert t.pings == count
