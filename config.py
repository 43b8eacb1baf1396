"""Configuration loader for agentlink.

Loads agentlink.toml (optional), maps legacy keys onto the current layout,
applies environment variable overrides, validates, and provides typed
access to all settings. Durations are configured in milliseconds and
exposed in seconds where the name says so.
Immutable after load; there is no runtime config reloading.
"""

import copy
import logging
import os
import re
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides (env var -> top-level key)
_ENV_OVERRIDES = {
    "AGENTLINK_LOCK_DIR": "lock_dir",
    "AGENTLINK_LOG_LEVEL": "log_level",
    "AGENTLINK_TERMINAL_CMD": "terminal_cmd",
}

LOG_LEVELS = ("trace", "debug", "info", "warn", "error")

# Below DEBUG: JSON-RPC frames and mention timer transitions
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Keys that used to live under [mcp]
_LEGACY_MCP_KEYS = (
    "port_range", "auto_start", "log_level", "focus_after_send",
    "connection_wait_delay", "connection_timeout", "queue_timeout",
)

# Sub-commands and options stripped from a legacy `command` string
_LEGACY_COMMAND_STRIP = (
    re.compile(r"\s+(ask|plan|agent)(?=\s|$)"),
    re.compile(r"\s+--resume(?=\s|$)"),
    re.compile(r"\s+--model\s+\S+"),
)

_LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def translate_legacy(data: dict) -> dict:
    """Map pre-1.0 config keys onto the current layout. Pure: ``data`` is not mutated.

    - ``[mcp]`` keys move to the top level (explicit top-level keys win)
    - ``command`` becomes ``terminal_cmd`` with sub-commands and
      ``--resume`` / ``--model X`` stripped
    """
    out = copy.deepcopy(data)

    mcp = out.pop("mcp", None)
    if isinstance(mcp, dict):
        for key in _LEGACY_MCP_KEYS:
            if key in mcp and key not in out:
                out[key] = mcp[key]

    command = out.pop("command", None)
    if isinstance(command, str) and "terminal_cmd" not in out:
        cmd = command.strip()
        for pattern in _LEGACY_COMMAND_STRIP:
            cmd = pattern.sub(" ", cmd)
        cmd = " ".join(cmd.split())
        if cmd:
            out["terminal_cmd"] = cmd

    return out


class Config:
    """Immutable configuration loaded from agentlink.toml."""

    def __init__(self, data: dict | None = None, config_dir: Path | None = None):
        self._data = translate_legacy(data or {})
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                self._data[key] = val

    def _validate(self):
        errors = []
        pr = self._data.get("port_range", {})
        if not isinstance(pr, dict):
            errors.append("port_range must be a table with min and max")
        else:
            lo = pr.get("min", 10000)
            hi = pr.get("max", 65535)
            if not (isinstance(lo, int) and isinstance(hi, int)) or isinstance(lo, bool) or isinstance(hi, bool):
                errors.append("port_range.min and port_range.max must be integers")
            elif not (0 < lo <= hi <= 65535):
                errors.append("port_range must satisfy 0 < min <= max <= 65535")

        if self.host not in _LOOPBACK_HOSTS:
            errors.append(f"host must be a loopback address, got {self.host!r}")

        for key in ("auto_start", "focus_after_send"):
            if key in self._data and not isinstance(self._data[key], bool):
                errors.append(f"{key} must be a boolean")

        if self._data.get("terminal_cmd") is not None and not isinstance(self._data["terminal_cmd"], str):
            errors.append("terminal_cmd must be a string")

        if self.log_level not in LOG_LEVELS:
            errors.append("log_level must be one of: " + ", ".join(LOG_LEVELS))

        for key in ("connection_wait_delay", "debounce_ms", "pacing_ms"):
            v = self._data.get(key, 0)
            if not _is_number(v) or v < 0:
                errors.append(f"{key} must be a non-negative number")
        for key in ("connection_timeout", "queue_timeout"):
            v = self._data.get(key, 1)
            if not _is_number(v) or v <= 0:
                errors.append(f"{key} must be a positive number")

        env = self._data.get("env", {})
        if not isinstance(env, dict):
            errors.append("env must be a table")
        elif not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items()):
            errors.append("env keys and values must be strings")

        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Server ---

    @property
    def port_min(self) -> int:
        return _deep_get(self._data, "port_range", "min", default=10000)

    @property
    def port_max(self) -> int:
        return _deep_get(self._data, "port_range", "max", default=65535)

    @property
    def host(self) -> str:
        return self._data.get("host", "127.0.0.1")

    @property
    def heartbeat(self) -> float:
        return float(self._data.get("heartbeat", 30.0))

    @property
    def max_message_bytes(self) -> int:
        return self._data.get("max_message_bytes", 4 * 1024 * 1024)

    @property
    def auto_start(self) -> bool:
        return self._data.get("auto_start", True)

    # --- Discovery ---

    @property
    def lock_dir(self) -> Path:
        return _resolve_path(self._data.get("lock_dir", "~/.agentlink/ide"))

    @property
    def ide_name(self) -> str:
        return self._data.get("ide_name", "agentlink")

    @property
    def workspace_folders(self) -> list[str]:
        folders = self._data.get("workspace_folders")
        if folders:
            return [str(_resolve_path(f)) for f in folders]
        return [str(Path.cwd())]

    # --- Mention Queue ---

    @property
    def connection_wait_delay(self) -> float:
        """Seconds to wait after a connection before sending queued mentions."""
        return self._data.get("connection_wait_delay", 600) / 1000.0

    @property
    def connection_timeout(self) -> float:
        """Seconds to wait for an agent before dropping the queue."""
        return self._data.get("connection_timeout", 10000) / 1000.0

    @property
    def queue_timeout(self) -> float:
        """Seconds a queued mention stays deliverable."""
        return self._data.get("queue_timeout", 5000) / 1000.0

    @property
    def debounce_ms(self) -> int:
        return self._data.get("debounce_ms", 50)

    @property
    def pacing_ms(self) -> int:
        return self._data.get("pacing_ms", 25)

    @property
    def focus_after_send(self) -> bool:
        return self._data.get("focus_after_send", False)

    # --- Terminal ---

    @property
    def terminal_cmd(self) -> str | None:
        return self._data.get("terminal_cmd")

    @property
    def terminal_env(self) -> dict[str, str]:
        return dict(self._data.get("env", {}))

    @property
    def terminal_cwd(self) -> Path | None:
        cwd = self._data.get("cwd")
        return _resolve_path(cwd) if cwd else None

    # --- Logging ---

    @property
    def log_level(self) -> str:
        return str(self._data.get("log_level", "info")).lower()

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.agentlink/agentlink.log"))

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- Paths ---

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir",
                                       default="~/.agentlink"))

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _deep_get(self._data, *keys, default=default)


def _read_dotenv(env_file: Path) -> dict[str, str]:
    """Parse ``KEY=value`` lines, with an optional ``export`` prefix and quotes."""
    values: dict[str, str] = {}
    for raw in env_file.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, val = line.partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        val = val.strip()
        if len(val) >= 2 and val[0] == val[-1] and val[0] in "'\"":
            val = val[1:-1]
        values[key] = val
    return values


def _load_dotenv(toml_path: Path) -> None:
    """Export ``.env`` beside agentlink.toml; the agent CLI inherits it.

    Variables already set in the environment win.
    """
    env_file = toml_path.parent / ".env"
    if not env_file.is_file():
        return
    added = 0
    for key, val in _read_dotenv(env_file).items():
        if key not in os.environ:
            os.environ[key] = val
            added += 1
    log.debug("Loaded %d variable(s) from %s", added, env_file)


def _set_dotted(data: dict, key_path: str, value: Any) -> None:
    """``port_range.max`` -> ``data["port_range"]["max"] = value``."""
    *parents, leaf = key_path.split(".")
    node = data
    for key in parents:
        node = node.setdefault(key, {})
        if not isinstance(node, dict):
            raise ConfigError(f"Cannot override {key_path}: {key} is not a table")
    node[leaf] = value


def load_config(path: str | Path | None = None, overrides: dict | None = None,
                required: bool = False) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to agentlink.toml. A missing file yields the defaults
              unless ``required`` is set.
        overrides: Dotted-key overrides (``--port-min`` and friends) applied
                   to the raw TOML data before validation.
    """
    data: dict = {}
    config_dir = None
    if path is not None:
        p = Path(path).expanduser().resolve()
        if p.exists():
            _load_dotenv(p)
            try:
                with open(p, "rb") as f:
                    data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Invalid TOML in {p}: {e}") from e
            config_dir = p.parent
        elif required:
            raise ConfigError(f"Config file not found: {p}")
        else:
            log.debug("No config file at %s, using defaults", p)
    for key_path, value in (overrides or {}).items():
        _set_dotted(data, key_path, value)
    return Config(data, config_dir=config_dir)
