"""Discovery records for the agent CLI.

Each running bridge advertises itself with ``<lock_dir>/<port>.lock``:

    {
      "pid": 4242,
      "port": 10002,
      "workspaceFolders": ["/home/me/project"],
      "ideName": "agentlink",
      "transport": "ws",
      "authToken": "..."
    }

The agent scans the directory, picks a record, connects to the port and
presents the token during the WebSocket handshake. Records are written
atomically and read back so the caller can verify that the token on disk
is the one it holds.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

log = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class DiscoveryWriteError(Exception):
    """Raised when a discovery record cannot be written, read back or removed."""
    pass


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class DiscoveryStore:
    """Reads and writes discovery records in a single directory."""

    def __init__(self, lock_dir: str | Path, ide_name: str = "agentlink"):
        self.lock_dir = Path(lock_dir).expanduser()
        self.ide_name = ide_name

    def path_for(self, port: int) -> Path:
        return self.lock_dir / f"{port}{LOCK_SUFFIX}"

    # ─── Write ───────────────────────────────────────────────────

    def create(self, port: int, token: str,
               workspace_folders: list[str] | None = None) -> str:
        """Write the record for ``port`` and return the token read back from disk.

        The returned value is what any other reader of the directory would
        observe right now. Callers compare it against ``token``.
        """
        record = {
            "pid": os.getpid(),
            "port": port,
            "workspaceFolders": list(workspace_folders or [os.getcwd()]),
            "ideName": self.ide_name,
            "transport": "ws",
            "authToken": token,
        }
        target = self.path_for(port)
        tmp_name = None
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.lock_dir, prefix=f".{port}.", suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as e:
            raise DiscoveryWriteError(f"Cannot write {target}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:  # noqa: S110
                    pass

        echoed = self.read(port)
        if echoed is None:
            raise DiscoveryWriteError(f"Record vanished after write: {target}")
        log.info("Discovery record written: %s", target)
        token_echo = echoed.get("authToken")
        if not isinstance(token_echo, str):
            log.warning("Record %s carries a non-string authToken", target)
            return ""
        return token_echo

    def remove(self, port: int) -> None:
        """Delete the record for ``port``. A missing record is not an error."""
        target = self.path_for(port)
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            raise DiscoveryWriteError(f"Cannot remove {target}: {e}") from e
        log.info("Discovery record removed: %s", target)

    # ─── Read ────────────────────────────────────────────────────

    def read(self, port: int) -> dict | None:
        """Return the record for ``port``, or None if absent."""
        target = self.path_for(port)
        try:
            data = json.loads(target.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise DiscoveryWriteError(f"Unreadable record {target}: {e}") from e
        if not isinstance(data, dict):
            raise DiscoveryWriteError(f"Malformed record {target}: not an object")
        return data

    def records(self) -> list[dict]:
        """All readable records in the directory, sorted by port."""
        if not self.lock_dir.is_dir():
            return []
        found = []
        for p in sorted(self.lock_dir.glob(f"*{LOCK_SUFFIX}")):
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                log.debug("Skipping unreadable record %s", p)
                continue
            if isinstance(data, dict):
                found.append(data)
        return sorted(found, key=lambda r: r.get("port", 0))

    def sweep_stale(self) -> int:
        """Remove records whose owning process is gone. Returns count removed."""
        if not self.lock_dir.is_dir():
            return 0
        removed = 0
        for p in self.lock_dir.glob(f"*{LOCK_SUFFIX}"):
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
                pid = int(data["pid"])
            except (OSError, ValueError, KeyError, TypeError):
                # Not ours to judge
                continue
            if pid == os.getpid() or pid_alive(pid):
                continue
            try:
                p.unlink(missing_ok=True)
                removed += 1
                log.info("Removed stale discovery record %s (pid %d)", p, pid)
            except OSError as e:
                log.warning("Cannot remove stale record %s: %s", p, e)
        return removed
