"""Tests for bridge.py: startup sequence, rollback, shutdown, mention routing."""

import json
import logging
import socket
from unittest.mock import MagicMock

import aiohttp
import pytest
from conftest import connect_agent, wait_until

from auth import TokenGenerationError
from bridge import Bridge
from config import Config
from lockfile import DiscoveryStore, DiscoveryWriteError


@pytest.fixture
def terminal():
    t = MagicMock()
    t.is_visible.return_value = False
    return t


@pytest.fixture
def notify():
    return MagicMock()


@pytest.fixture
def config(config_data):
    return Config(config_data)


@pytest.fixture
def bridge(config, terminal, notify):
    return Bridge(config, terminal=terminal, notify=notify)


class TestStart:
    @pytest.mark.asyncio
    async def test_start_writes_matching_record(self, bridge, config):
        ok, port = await bridge.start()
        try:
            assert ok is True
            assert config.port_min <= port <= config.port_max
            record = json.loads((config.lock_dir / f"{port}.lock").read_text())
            assert record["authToken"] == bridge.session.token
            assert record["port"] == port
            assert record["transport"] == "ws"
            assert bridge.get_status()["running"] is True
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_busy_ports_skipped(self, bridge, config):
        held = []
        try:
            for port in (config.port_min, config.port_min + 1):
                s = socket.socket()
                try:
                    s.bind(("127.0.0.1", port))
                except OSError:
                    s.close()
                    pytest.skip(f"port {port} already taken")
                s.listen(1)
                held.append(s)
            ok, port = await bridge.start()
            assert ok is True
            assert port >= config.port_min + 2
            assert bridge.store.read(port)["authToken"] == bridge.session.token
            await bridge.stop()
        finally:
            for s in held:
                s.close()

    @pytest.mark.asyncio
    async def test_double_start(self, bridge):
        await bridge.start()
        try:
            assert await bridge.start() == (False, "already running")
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_status_shape(self, bridge):
        await bridge.start()
        try:
            status = bridge.get_status()
            assert status["client_count"] == 0
            assert status["queue_length"] == 0
            assert status["connected"] is False
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_stale_records_swept(self, bridge, config, monkeypatch):
        stale = config.lock_dir / "1.lock"
        stale.write_text(json.dumps({"pid": 999999, "authToken": "old"}))
        monkeypatch.setattr("lockfile.pid_alive", lambda pid: False)
        await bridge.start()
        try:
            assert not stale.exists()
        finally:
            await bridge.stop()


class TestStartFailures:
    @pytest.mark.asyncio
    async def test_token_mismatch_rolls_back(self, config, terminal, notify):
        store = MagicMock(spec=DiscoveryStore)
        store.lock_dir = config.lock_dir
        store.create.return_value = "a-different-token-entirely"
        bridge = Bridge(config, terminal=terminal, store=store, notify=notify)

        assert await bridge.start() == (False, "token mismatch")
        assert bridge.running is False
        status = bridge.get_status()
        assert status["running"] is False
        assert status["port"] is None
        store.remove.assert_called_once()
        notify.assert_called_once()
        assert notify.call_args[0][1] == logging.ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("echo", [12345, None, ["token"]])
    async def test_non_string_echo_rolls_back(self, config, terminal, notify, echo):
        store = MagicMock(spec=DiscoveryStore)
        store.lock_dir = config.lock_dir
        store.create.return_value = echo
        bridge = Bridge(config, terminal=terminal, store=store, notify=notify)

        assert await bridge.start() == (False, "token mismatch")
        assert bridge.get_status()["running"] is False
        store.remove.assert_called_once()

    @pytest.mark.asyncio
    async def test_non_string_token_on_disk_rolls_back(self, config, terminal, notify, monkeypatch):
        bridge = Bridge(config, terminal=terminal, notify=notify)
        monkeypatch.setattr(bridge.store, "read", lambda port: {"authToken": 42})
        assert await bridge.start() == (False, "token mismatch")
        assert list(config.lock_dir.glob("*.lock")) == []

    @pytest.mark.asyncio
    async def test_mismatch_releases_port(self, config, terminal, notify):
        store = MagicMock(spec=DiscoveryStore)
        store.lock_dir = config.lock_dir
        store.create.return_value = "nope-nope-nope"
        bridge = Bridge(config, terminal=terminal, store=store, notify=notify)
        await bridge.start()
        port = store.create.call_args[0][0]

        again = Bridge(config, terminal=terminal, notify=notify)
        ok, second = await again.start()
        try:
            assert ok is True
            assert second == port
        finally:
            await again.stop()

    @pytest.mark.asyncio
    async def test_mismatch_leaves_no_record(self, config, terminal, notify, monkeypatch):
        bridge = Bridge(config, terminal=terminal, notify=notify)
        monkeypatch.setattr(bridge.store, "read", lambda port: {"authToken": "tampered-token"})
        assert await bridge.start() == (False, "token mismatch")
        assert list(config.lock_dir.glob("*.lock")) == []

    @pytest.mark.asyncio
    async def test_token_generation_failure(self, config, terminal, notify):
        def broken():
            raise TokenGenerationError("Entropy source unavailable: test")

        bridge = Bridge(config, terminal=terminal, notify=notify, token_factory=broken)
        ok, reason = await bridge.start()
        assert ok is False
        assert "Entropy source" in reason
        assert list(config.lock_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_record_write_failure_stops_server(self, config, terminal, notify):
        store = MagicMock(spec=DiscoveryStore)
        store.lock_dir = config.lock_dir
        store.create.side_effect = DiscoveryWriteError("read-only filesystem")
        bridge = Bridge(config, terminal=terminal, store=store, notify=notify)
        ok, reason = await bridge.start()
        assert ok is False
        assert "read-only" in reason
        assert bridge.get_status()["running"] is False

    @pytest.mark.asyncio
    async def test_no_port_available(self, config_data, terminal, notify):
        held = socket.socket()
        held.bind(("127.0.0.1", 0))
        held.listen(1)
        busy = held.getsockname()[1]
        try:
            config_data["port_range"] = {"min": busy, "max": busy}
            bridge = Bridge(Config(config_data), terminal=terminal, notify=notify)
            ok, reason = await bridge.start()
            assert ok is False
            assert "No free port" in reason
        finally:
            held.close()


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_removes_record(self, bridge, config):
        _, port = await bridge.start()
        assert await bridge.stop() == (True, None)
        assert not (config.lock_dir / f"{port}.lock").exists()
        assert bridge.get_status()["running"] is False

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, bridge):
        assert await bridge.stop() == (False, "not running")

    @pytest.mark.asyncio
    async def test_restart(self, bridge):
        await bridge.start()
        await bridge.stop()
        ok, _ = await bridge.start()
        try:
            assert ok is True
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_stop_discards_queue(self, bridge):
        await bridge.start()
        await bridge.send_mention("/a.py")
        queue = bridge.session.queue
        assert len(queue) == 1
        await bridge.stop()
        assert len(queue) == 0
        assert not queue.connection_wait_armed


class TestChannelEnv:
    @pytest.mark.asyncio
    async def test_env_has_port_while_running(self, bridge, config):
        assert bridge.channel_env() == {"AGENTLINK_LOCK_DIR": str(config.lock_dir)}
        _, port = await bridge.start()
        try:
            assert bridge.channel_env()["AGENTLINK_PORT"] == str(port)
        finally:
            await bridge.stop()


class TestSendMention:
    @pytest.mark.asyncio
    async def test_not_running(self, bridge):
        assert await bridge.send_mention("/a.py") is False

    @pytest.mark.asyncio
    async def test_argument_checks(self, bridge):
        with pytest.raises(ValueError):
            await bridge.send_mention("/a.py", -1, 2)
        with pytest.raises(ValueError):
            await bridge.send_mention("/a.py", None, 2)
        with pytest.raises(ValueError):
            await bridge.send_mention("/a.py", 5, 2)

    @pytest.mark.asyncio
    async def test_disconnected_queues_and_opens_terminal(self, bridge, terminal):
        await bridge.start()
        try:
            assert await bridge.send_mention("/a.py", 0, 4) is True
            assert bridge.get_status()["queue_length"] == 1
            terminal.open.assert_called_once()
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_visible_terminal_not_reopened(self, bridge, terminal):
        terminal.is_visible.return_value = True
        await bridge.start()
        try:
            await bridge.send_mention("/a.py")
            terminal.open.assert_not_called()
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_connected_sends_directly(self, bridge, terminal):
        _, port = await bridge.start()
        try:
            async with aiohttp.ClientSession() as http:
                ws = await connect_agent(http, port, bridge.session.token)
                assert await wait_until(bridge.is_connected)
                assert await bridge.send_mention("/src/a.py", 2, 3) is True
                msg = await ws.receive_json(timeout=2)
                assert msg == {
                    "jsonrpc": "2.0", "method": "at_mentioned",
                    "params": {"filePath": "/src/a.py", "lineStart": 2, "lineEnd": 3},
                }
                assert bridge.get_status()["queue_length"] == 0
                terminal.open.assert_not_called()
                await ws.close()
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_focus_after_send(self, config_data, terminal, notify):
        config_data["focus_after_send"] = True
        bridge = Bridge(Config(config_data), terminal=terminal, notify=notify)
        _, port = await bridge.start()
        try:
            async with aiohttp.ClientSession() as http:
                ws = await connect_agent(http, port, bridge.session.token)
                assert await wait_until(bridge.is_connected)
                await bridge.send_mention("/a.py")
                terminal.focus.assert_called_once()
                await ws.close()
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_mention_during_paced_flush_waits_its_turn(self, config_data, terminal, notify):
        config_data["pacing_ms"] = 100
        bridge = Bridge(Config(config_data), terminal=terminal, notify=notify)
        _, port = await bridge.start()
        try:
            for path in ("/a.py", "/b.py", "/c.py"):
                await bridge.send_mention(path)
            async with aiohttp.ClientSession() as http:
                ws = await connect_agent(http, port, bridge.session.token)
                first = await ws.receive_json(timeout=3)
                assert bridge.session.queue.flushing
                await bridge.send_mention("/d.py")
                received = [first["params"]["filePath"]]
                for _ in range(3):
                    msg = await ws.receive_json(timeout=3)
                    received.append(msg["params"]["filePath"])
                assert received == ["/a.py", "/b.py", "/c.py", "/d.py"]
                await ws.close()
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_queued_mentions_flushed_on_connect_in_order(self, bridge):
        _, port = await bridge.start()
        try:
            await bridge.send_mention("/one.py")
            await bridge.send_mention("/two.py", 0, 0)
            async with aiohttp.ClientSession() as http:
                ws = await connect_agent(http, port, bridge.session.token)
                first = await ws.receive_json(timeout=3)
                second = await ws.receive_json(timeout=3)
                assert first["params"]["filePath"] == "/one.py"
                assert second["params"]["filePath"] == "/two.py"
                assert bridge.get_status()["queue_length"] == 0
                await ws.close()
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_handshake_pending_client_does_not_count(self, bridge):
        _, port = await bridge.start()
        try:
            async with aiohttp.ClientSession() as http:
                ws = await connect_agent(http, port, bridge.session.token, initialized=False)
                assert bridge.get_status()["client_count"] == 1
                assert bridge.is_connected() is False
                await bridge.send_mention("/a.py")
                assert bridge.get_status()["queue_length"] == 1
                await ws.close()
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_queue_drop_notifies(self, config_data, terminal, notify):
        config_data["connection_timeout"] = 50
        bridge = Bridge(Config(config_data), terminal=terminal, notify=notify)
        await bridge.start()
        try:
            await bridge.send_mention("/a.py")
            assert await wait_until(lambda: notify.called)
            message, level = notify.call_args[0]
            assert "Dropped 1 queued mention(s)" in message
            assert level == logging.ERROR
            assert bridge.get_status()["queue_length"] == 0
        finally:
            await bridge.stop()


class TestNotifications:
    @pytest.mark.asyncio
    async def test_inbound_handler(self, bridge):
        seen = []
        bridge.on_notification("selection_changed", lambda params, conn: seen.append(params))
        _, port = await bridge.start()
        try:
            async with aiohttp.ClientSession() as http:
                ws = await connect_agent(http, port, bridge.session.token)
                await ws.send_json({"jsonrpc": "2.0", "method": "selection_changed",
                                    "params": {"filePath": "/a.py"}})
                assert await wait_until(lambda: seen == [{"filePath": "/a.py"}])
                await ws.close()
        finally:
            await bridge.stop()
