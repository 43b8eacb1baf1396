"""Terminal collaborator: where the agent CLI lives.

The bridge only needs to know whether the agent UI is up and to bring it
up when a mention arrives before any agent has connected. Presentation
(splits, floats, focus handling) belongs to the editor; the process-backed
implementation here is what the standalone daemon uses.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from config import Config

log = logging.getLogger(__name__)


class Terminal(Protocol):
    def open(self) -> None: ...
    def is_visible(self) -> bool: ...
    def get_active_handle(self) -> int | None: ...
    def focus(self) -> None: ...
    def close(self) -> None: ...


class NullTerminal:
    """Used when no agent command is configured; the agent is started by hand."""

    def open(self) -> None:
        log.debug("No terminal_cmd configured; start the agent CLI yourself")

    def is_visible(self) -> bool:
        return False

    def get_active_handle(self) -> int | None:
        return None

    def focus(self) -> None:
        pass

    def close(self) -> None:
        pass


class ProcessTerminal:
    """Runs the agent CLI as a child process pointed at the running channel."""

    def __init__(
        self,
        command: str,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        channel_env: Callable[[], dict[str, str]] | None = None,
    ):
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("terminal command is empty")
        self.env = dict(env or {})
        self.cwd = cwd
        self._channel_env = channel_env
        self._proc: subprocess.Popen | None = None

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.env)
        if self._channel_env is not None:
            env.update(self._channel_env())
        return env

    def open(self) -> None:
        if self.is_visible():
            return
        try:
            self._proc = subprocess.Popen(  # noqa: S603 - argv from user config
                self.argv,
                cwd=str(self.cwd) if self.cwd else None,
                env=self._build_env(),
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            log.error("Cannot start agent %r: %s", self.argv[0], e)
            self._proc = None
            return
        log.info("Started agent %s (pid %d)", self.argv[0], self._proc.pid)

    def is_visible(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def get_active_handle(self) -> int | None:
        return self._proc.pid if self.is_visible() else None

    def focus(self) -> None:
        # A detached process has nothing to focus
        pass

    def close(self, timeout: float = 5.0) -> None:
        proc = self._proc
        self._proc = None
        if proc is None or proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            log.warning("Agent pid %d ignored SIGTERM, killing", proc.pid)
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            proc.wait()
        except ProcessLookupError:
            pass
        log.info("Agent pid %d stopped", proc.pid)


def create_terminal(config: Config,
                    channel_env: Callable[[], dict[str, str]] | None = None) -> Terminal:
    """Factory: process terminal when a command is configured, else a no-op."""
    if not config.terminal_cmd:
        return NullTerminal()
    return ProcessTerminal(
        config.terminal_cmd,
        env=config.terminal_env,
        cwd=config.terminal_cwd,
        channel_env=channel_env,
    )
