#!/usr/bin/env python3
"""agentlink: hands editor context to a coding-agent CLI.

Entry point. Wires config → bridge → control FIFO.
Handles PID file, control FIFO, Unix signals, and the main event loop.

Control FIFO (``<state_dir>/control.pipe``) accepts one JSON object per line:

    {"type": "mention", "file_path": "/abs/a.py", "start_line": 9, "end_line": 19}
    {"type": "status"}
    {"type": "stop"}
"""

from __future__ import annotations

import argparse
import asyncio
import errno
import json
import logging
import logging.handlers
import os
import re
import signal
import sys
import time
from pathlib import Path

# Add project directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from bridge import Bridge
from config import TRACE, Config, ConfigError, load_config
from lockfile import pid_alive

log = logging.getLogger("agentlink")

__version__ = "0.1.0"

CONTROL_TYPES = frozenset({"mention", "status", "stop"})

_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_MENTION_ARG = re.compile(r"^(?P<path>.+?)(?::(?P<start>\d+)(?:-(?P<end>\d+))?)?$")


# ─── PID File ────────────────────────────────────────────────────

def _check_pid_file(path: Path) -> None:
    """Refuse to start if another instance is live."""
    try:
        text = path.read_text().strip()
    except FileNotFoundError:
        return
    try:
        pid = int(text)
    except ValueError:
        pid = None
    if pid is not None and pid_alive(pid):
        print(f"Another instance is running (PID {pid}). Exiting.", file=sys.stderr)
        sys.exit(1)
    log.info("Stale PID file found, removing")
    path.unlink(missing_ok=True)


def _write_pid_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(f"{os.getpid()}\n")


def _remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:  # noqa: S110
        pass


# ─── Control FIFO ────────────────────────────────────────────────

def _parse_control_line(line: str) -> dict | None:
    """Validate one FIFO line. Returns the message dict, or None to ignore it."""
    try:
        msg = json.loads(line)
    except json.JSONDecodeError:
        log.warning("Invalid JSON from FIFO: %s", line[:200])
        return None
    if not isinstance(msg, dict):
        log.warning("FIFO message not a dict, ignoring")
        return None
    kind = msg.get("type")
    if kind not in CONTROL_TYPES:
        log.warning("Unknown FIFO message type %r, ignoring", kind)
        return None
    if kind == "mention":
        if not isinstance(msg.get("file_path"), str) or not msg["file_path"]:
            log.warning("FIFO mention missing file_path, ignoring")
            return None
        for key in ("start_line", "end_line"):
            val = msg.get(key)
            if val is not None and (not isinstance(val, int) or isinstance(val, bool)):
                log.warning("FIFO mention %s must be an integer, ignoring", key)
                return None
    return msg


async def _fifo_reader(fifo_path: Path, queue: asyncio.Queue) -> None:
    """Read JSON messages from the control FIFO."""
    fifo_path.parent.mkdir(parents=True, exist_ok=True)
    if fifo_path.exists():
        fifo_path.unlink()
    os.mkfifo(fifo_path, mode=0o600)
    log.info("Control FIFO: %s", fifo_path)

    while True:
        try:
            # Blocks until a writer connects
            fd = await asyncio.to_thread(os.open, str(fifo_path), os.O_RDONLY)
            with os.fdopen(fd, "r") as f:
                data = await asyncio.to_thread(f.read)
            for line in data.strip().splitlines():
                msg = _parse_control_line(line)
                if msg is not None:
                    await queue.put(msg)
        except asyncio.CancelledError:
            break
        except OSError as e:
            log.error("FIFO reader error: %s", e)
            await asyncio.sleep(1)


def _wake_fifo(fifo_path: Path) -> None:
    """Unblock a reader thread parked in open() so the executor can shut down."""
    try:
        fd = os.open(str(fifo_path), os.O_WRONLY | os.O_NONBLOCK)
    except OSError:
        return
    os.close(fd)


def send_to_fifo(fifo_path: Path, payload: dict) -> None:
    """Write one control message to a running daemon's FIFO.

    Raises RuntimeError if no daemon is reading.
    """
    try:
        fd = os.open(str(fifo_path), os.O_WRONLY | os.O_NONBLOCK)
    except FileNotFoundError:
        raise RuntimeError(f"agentlink is not running (no FIFO at {fifo_path})") from None
    except OSError as e:
        if e.errno == errno.ENXIO:
            raise RuntimeError(f"agentlink is not running (nobody reading {fifo_path})") from None
        raise
    with os.fdopen(fd, "w") as f:
        f.write(json.dumps(payload) + "\n")


def parse_mention_arg(arg: str, cwd: Path | None = None) -> dict:
    """``path[:START[-END]]`` with 1-indexed lines → zero-indexed mention message."""
    m = _MENTION_ARG.match(arg.strip())
    if not m or not m.group("path"):
        raise ValueError(f"Cannot parse mention {arg!r}")
    path = Path(m.group("path")).expanduser()
    if not path.is_absolute():
        path = (cwd or Path.cwd()) / path
    msg: dict = {"type": "mention", "file_path": str(path)}
    if m.group("start"):
        start = int(m.group("start"))
        end = int(m.group("end")) if m.group("end") else start
        if start < 1 or end < start:
            raise ValueError(f"Invalid line range in {arg!r}")
        msg["start_line"] = start - 1
        msg["end_line"] = end - 1
    return msg


# ─── Daemon ──────────────────────────────────────────────────────

class AgentLinkDaemon:
    def __init__(self, config: Config, bridge: Bridge | None = None):
        self.config = config
        self.running = True
        self.start_time = time.time()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self.bridge = bridge or Bridge(config)
        self._fifo_task: asyncio.Task | None = None

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        level = _LEVELS.get(self.config.log_level, logging.INFO)
        floor = min(level, logging.DEBUG)
        fh.setFormatter(fmt)
        fh.setLevel(floor)

        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(level)

        root = logging.getLogger()
        root.setLevel(floor)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers unless tracing
        if level > TRACE:
            for name in ("aiohttp.access", "aiohttp.server", "aiohttp.web"):
                logging.getLogger(name).setLevel(logging.WARNING)

    def _build_status(self) -> dict:
        return {
            "pid": os.getpid(),
            "version": __version__,
            "uptime_s": round(time.time() - self.start_time, 1),
            "bridge": self.bridge.get_status(),
        }

    def _write_status(self) -> Path:
        status_path = self.config.state_dir / "status.json"
        status_path.parent.mkdir(parents=True, exist_ok=True)
        status_path.write_text(json.dumps(self._build_status(), indent=2))
        return status_path

    async def _handle_control(self, msg: dict) -> None:
        kind = msg["type"]
        if kind == "stop":
            log.info("Stop requested via FIFO")
            self.running = False
        elif kind == "status":
            path = self._write_status()
            log.info("Status written to %s", path)
        elif kind == "mention":
            if not self.bridge.running:
                ok, value = await self.bridge.start()
                if not ok:
                    log.error("Mention for %s dropped: %s", msg["file_path"], value)
                    return
            try:
                await self.bridge.send_mention(
                    msg["file_path"], msg.get("start_line"), msg.get("end_line"),
                )
            except ValueError as e:
                log.warning("Bad mention from FIFO: %s", e)

    async def _control_loop(self) -> None:
        """Handle control messages one at a time until stopped."""
        while self.running:
            try:
                item = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            if item is None:
                self.running = False
                break
            await self._handle_control(item)

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            self._write_status()

        def handle_sigterm():
            log.info("SIGTERM: shutting down gracefully")
            self.running = False

        try:
            loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
            loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
            loop.add_signal_handler(signal.SIGINT, handle_sigterm)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run(self) -> int:
        """Start all components and run until stopped."""
        cfg = self.config
        pid_path = cfg.state_dir / "agentlink.pid"
        fifo_path = cfg.state_dir / "control.pipe"

        self._setup_logging()
        log.info("Starting agentlink %s", __version__)

        _check_pid_file(pid_path)
        _write_pid_file(pid_path)

        try:
            loop = asyncio.get_running_loop()
            self._setup_signals(loop)

            if cfg.auto_start:
                ok, value = await self.bridge.start()
                if not ok:
                    log.error("Bridge failed to start: %s", value)
                    return 1

            self._fifo_task = asyncio.create_task(_fifo_reader(fifo_path, self.queue))
            log.info("agentlink running (PID %d)", os.getpid())

            await self._control_loop()
            return 0
        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            if self._fifo_task:
                self._fifo_task.cancel()
                _wake_fifo(fifo_path)
                try:
                    await self._fifo_task
                except asyncio.CancelledError:
                    pass
            if self.bridge.running:
                await self.bridge.stop()
            # close() waits on the child process
            await asyncio.to_thread(self.bridge.terminal.close)
            _remove_pid_file(pid_path)
            try:
                fifo_path.unlink(missing_ok=True)
            except OSError:  # noqa: S110
                pass
            log.info("agentlink stopped")


# ─── CLI Entry Point ─────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="agentlink: hand editor context to a coding-agent CLI",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("AGENTLINK_CONFIG", "./agentlink.toml"),
        help="Path to config file (default: $AGENTLINK_CONFIG or ./agentlink.toml)",
    )
    parser.add_argument("--port-min", type=int, help="Override port_range.min")
    parser.add_argument("--port-max", type=int, help="Override port_range.max")
    parser.add_argument(
        "--mention", metavar="PATH[:START[-END]]",
        help="Send a mention to the running daemon (1-indexed lines) and exit",
    )
    parser.add_argument("--version", action="version", version=f"agentlink {__version__}")
    args = parser.parse_args()

    overrides = {}
    if args.port_min is not None:
        overrides["port_range.min"] = args.port_min
    if args.port_max is not None:
        overrides["port_range.max"] = args.port_max

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    if args.mention:
        try:
            send_to_fifo(config.state_dir / "control.pipe", parse_mention_arg(args.mention))
        except (RuntimeError, ValueError) as e:
            print(str(e), file=sys.stderr)
            sys.exit(1)
        return

    daemon = AgentLinkDaemon(config)
    try:
        sys.exit(asyncio.run(daemon.run()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
