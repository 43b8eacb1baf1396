"""Bridge: start, stop and talk to the agent channel.

Startup order is fixed: issue token → listen → write discovery record →
read it back and compare tokens. Any failure unwinds everything that was
already set up, so a failed start never leaves a listener or a record
behind. Shutdown mirrors it: record, server, queue.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from auth import TokenGenerationError, issue_token, tokens_match
from config import Config
from lockfile import DiscoveryStore, DiscoveryWriteError
from mentions import MENTION_METHOD, Mention, MentionQueue
from server import BindError, Connection, is_agent_connected
from server.websocket import ConnectionServer
from terminal import Terminal, create_terminal

log = logging.getLogger(__name__)


class TokenMismatchError(Exception):
    """The discovery record on disk does not carry our token."""
    pass


_STARTUP_ERRORS = (TokenGenerationError, BindError, DiscoveryWriteError, TokenMismatchError)


@dataclass
class AgentSession:
    """Everything that lives exactly as long as one start()/stop() cycle."""
    token: str
    server: ConnectionServer
    queue: MentionQueue
    port: int
    record_written: bool = False


def _log_notify(message: str, level: int = logging.INFO) -> None:
    log.log(level, message)


class Bridge:
    """Owns the agent channel for one editor process."""

    def __init__(
        self,
        config: Config,
        terminal: Terminal | None = None,
        store: DiscoveryStore | None = None,
        notify: Callable[[str, int], None] | None = None,
        token_factory: Callable[[], str] = issue_token,
    ):
        self.config = config
        self.store = store or DiscoveryStore(config.lock_dir, ide_name=config.ide_name)
        self.terminal = terminal or create_terminal(config, self.channel_env)
        self.session: AgentSession | None = None
        self._notify = notify or _log_notify
        self._issue_token = token_factory
        self._handlers: dict[str, Callable[..., Any]] = {}

    @property
    def running(self) -> bool:
        return self.session is not None

    @property
    def port(self) -> int | None:
        return self.session.port if self.session else None

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> tuple[bool, int | str]:
        """Bring the channel up. Returns (True, port) or (False, reason)."""
        if self.session is not None:
            return False, "already running"

        cfg = self.config
        server: ConnectionServer | None = None
        port: int | None = None
        record_attempted = False
        try:
            token = self._issue_token()
            server = ConnectionServer(
                host=cfg.host,
                on_ready=self._on_agent_ready,
                on_disconnect=self._on_agent_gone,
                heartbeat=cfg.heartbeat,
                max_msg_size=cfg.max_message_bytes,
                server_name=cfg.ide_name,
            )
            for method, callback in self._handlers.items():
                server.add_handler(method, callback)
            port = await server.start(cfg.port_min, cfg.port_max, token)

            self.store.sweep_stale()
            record_attempted = True
            echoed = self.store.create(port, token, cfg.workspace_folders)
            if not tokens_match(echoed, token):
                raise TokenMismatchError("token mismatch")
        except _STARTUP_ERRORS as e:
            await self._rollback(server, port if record_attempted else None)
            reason = str(e)
            log.error("Startup failed (%s): %s", type(e).__name__, reason)
            self._notify(f"agentlink failed to start: {reason}", logging.ERROR)
            return False, reason

        queue = MentionQueue(
            server.broadcast,
            self.is_connected,
            connection_wait_delay=cfg.connection_wait_delay,
            connection_timeout=cfg.connection_timeout,
            queue_timeout=cfg.queue_timeout,
            debounce=cfg.debounce_ms / 1000.0,
            pacing=cfg.pacing_ms / 1000.0,
            on_error=self._on_queue_error,
        )
        self.session = AgentSession(token=token, server=server, queue=queue,
                                    port=port, record_written=True)
        log.info("Bridge running on port %d", port)
        return True, port

    async def _rollback(self, server: ConnectionServer | None, record_port: int | None) -> None:
        if record_port is not None:
            try:
                self.store.remove(record_port)
            except DiscoveryWriteError as e:
                log.warning("Rollback: %s", e)
        if server is not None:
            await server.stop()

    async def stop(self) -> tuple[bool, str | None]:
        """Tear the channel down. Queued mentions are discarded."""
        session = self.session
        if session is None:
            return False, "not running"

        error = None
        if session.record_written:
            try:
                self.store.remove(session.port)
            except DiscoveryWriteError as e:
                log.warning("Discovery record not removed: %s", e)
        try:
            await session.server.stop()
        except (OSError, RuntimeError) as e:
            error = f"server stop failed: {e}"
            log.error(error)
        session.queue.clear()
        self.session = None
        log.info("Bridge stopped")
        return error is None, error

    # ─── Status ───────────────────────────────────────────────────

    def is_connected(self) -> bool:
        if self.session is None:
            return False
        return is_agent_connected(self.session.server.get_status())

    def get_status(self) -> dict:
        if self.session is None:
            return {
                "running": False,
                "port": None,
                "clients": [],
                "client_count": 0,
                "queue_length": 0,
                "connected": False,
            }
        status = self.session.server.get_status()
        status["queue_length"] = len(self.session.queue)
        status["connected"] = is_agent_connected(status)
        return status

    def channel_env(self) -> dict[str, str]:
        """Environment handed to a launched agent so it can find this channel."""
        env = {"AGENTLINK_LOCK_DIR": str(self.store.lock_dir)}
        if self.session is not None:
            env["AGENTLINK_PORT"] = str(self.session.port)
        return env

    def on_notification(self, method: str, callback: Callable[..., Any]) -> None:
        """Register ``callback(params, connection)`` for inbound agent messages."""
        self._handlers[method] = callback
        if self.session is not None:
            self.session.server.add_handler(method, callback)

    # ─── Mentions ─────────────────────────────────────────────────

    async def send_mention(self, file_path: str, start_line: int | None = None,
                           end_line: int | None = None) -> bool:
        """Send (or queue) a mention. Lines are zero-indexed.

        Returns True if the mention was delivered or accepted into the queue.
        """
        if start_line is not None and start_line < 0:
            raise ValueError(f"start_line must be >= 0, got {start_line}")
        if end_line is not None and (start_line is None or end_line < start_line):
            raise ValueError(f"end_line {end_line} needs a start_line <= it")

        session = self.session
        if session is None:
            log.warning("Mention for %s ignored: bridge not running", file_path)
            return False

        mention = Mention(file_path, start_line, end_line)
        # Anything still queued or mid-flush goes first
        queue = session.queue
        if self.is_connected() and not len(queue) and not queue.flushing:
            ok = await session.server.broadcast(MENTION_METHOD, mention.to_params())
            if not ok:
                log.warning("Mention for %s not delivered", file_path)
            elif self.config.focus_after_send:
                self.terminal.focus()
            return ok

        queue.enqueue(mention)
        if not self.is_connected() and not self.terminal.is_visible():
            log.info("No agent connected; opening agent terminal")
            self.terminal.open()
        return True

    # ─── Callbacks ────────────────────────────────────────────────

    def _on_agent_ready(self, conn: Connection) -> None:
        if self.session is not None:
            self.session.queue.on_connected()

    def _on_agent_gone(self, conn: Connection) -> None:
        log.debug("Agent %s gone; %d client(s) remain",
                  conn.id, self.get_status()["client_count"])

    def _on_queue_error(self, message: str) -> None:
        self._notify(message, logging.ERROR)
