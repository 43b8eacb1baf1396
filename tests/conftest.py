"""Shared fixtures for the agentlink test suite.

All tests use temporary directories and loopback ports.
Nothing touches ~/.agentlink/ or a running daemon.
"""

import asyncio
import socket
import sys
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))


def free_port() -> int:
    """A loopback port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` on the loop until it is true or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


async def connect_agent(http, port: int, token: str, *, initialized: bool = True):
    """Open an agent WebSocket and run the JSON-RPC readiness exchange."""
    from server.websocket import AUTH_HEADER

    ws = await http.ws_connect(f"http://127.0.0.1:{port}/", headers={AUTH_HEADER: token})
    await ws.send_json({
        "jsonrpc": "2.0", "id": 1, "method": "initialize",
        "params": {"clientInfo": {"name": "test-agent", "version": "0"}},
    })
    reply = await ws.receive_json(timeout=2)
    assert reply["id"] == 1
    if initialized:
        await ws.send_json({"jsonrpc": "2.0", "method": "notifications/initialized"})
    return ws


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingBroadcast:
    """Stands in for ConnectionServer.broadcast and remembers every call."""

    def __init__(self, result: bool = True):
        self.calls: list[tuple[str, dict]] = []
        self.result = result
        self.failing_paths: set[str] = set()

    async def __call__(self, method: str, params: dict) -> bool:
        self.calls.append((method, params))
        if params.get("filePath") in self.failing_paths:
            return False
        return self.result

    @property
    def paths(self) -> list[str]:
        return [p["filePath"] for _, p in self.calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return RecordingBroadcast()


@pytest.fixture
def lock_dir(tmp_path):
    """Temp directory acting as the discovery record directory."""
    d = tmp_path / "ide"
    d.mkdir()
    return d


@pytest.fixture
def config_data(tmp_path, lock_dir):
    """Valid config data (as parsed dict, not raw TOML) with fast timings."""
    port = free_port()
    return {
        "port_range": {"min": port, "max": min(port + 20, 65535)},
        "lock_dir": str(lock_dir),
        "connection_wait_delay": 0,
        "connection_timeout": 500,
        "queue_timeout": 5000,
        "debounce_ms": 10,
        "pacing_ms": 0,
        "heartbeat": 5.0,
        "workspace_folders": [str(tmp_path)],
        "paths": {
            "state_dir": str(tmp_path / "state"),
            "log_file": str(tmp_path / "agentlink.log"),
        },
    }


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's AGENTLINK_* variables out of tests."""
    for var in ("AGENTLINK_LOCK_DIR", "AGENTLINK_LOG_LEVEL", "AGENTLINK_TERMINAL_CMD",
                "AGENTLINK_CONFIG"):
        monkeypatch.delenv(var, raising=False)
