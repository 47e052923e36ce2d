"""Configuration: schema, the ~/.ccp/config.json store, and the resolved ProxyConfig."""

import json
import os
from dataclasses import dataclass
from pathlib import Path


class ConfigError(ValueError):
    """A configuration value could not be parsed."""


CONFIG_SCHEMA: dict[str, dict] = {
    "API_KEY": {"default": "", "description": "API key for authenticating requests (empty = no auth)"},
    "PORT": {"default": "8888", "description": "Server port"},
    "HOST": {"default": "127.0.0.1", "description": "Server bind address"},
    "CORS_ORIGIN": {"default": "*", "description": "Allowed CORS origin"},
    "CLAUDE_PATH": {"default": "claude", "description": "Path to Claude CLI binary"},
    "CLAUDE_WORKING_DIR": {"default": "", "description": "Default working directory for Claude (empty = cwd)"},
    "CLAUDE_PERMISSION_MODE": {
        "default": "default",
        "description": "Permission mode",
        "values": ["default", "plan", "acceptEdits", "bypassPermissions"],
    },
    "CLAUDE_MAX_TURNS": {"default": "25", "description": "Max agentic turns per request"},
    "CLAUDE_TIMEOUT_MS": {"default": "300000", "description": "Timeout per invocation in ms"},
    "SESSION_TTL_MS": {"default": "3600000", "description": "Session time-to-live in ms"},
    "SESSION_FILE": {"default": "", "description": "Session persistence file path (empty = in-memory)"},
    "DEFAULT_MODEL": {
        "default": "claude-sonnet-4-5-20250929",
        "description": "Default model",
        "values": [
            "claude-sonnet-4-5-20250929", "claude-opus-4-6", "claude-haiku-4-5-20251001",
            "sonnet", "opus", "haiku",
        ],
    },
    "LOG_LEVEL": {"default": "info", "description": "Log level", "values": ["error", "warn", "info", "debug"]},
    "LOG_FILE": {"default": "", "description": "Log file path (empty = console only)"},
    "LOG_MAX_SIZE": {"default": "10mb", "description": "Max log file size before rotation"},
    "LOG_MAX_FILES": {"default": "5", "description": "Number of rotated log backups to keep"},
}

DEFAULTS: dict[str, str] = {key: meta["default"] for key, meta in CONFIG_SCHEMA.items()}


# --- File store ---


def config_dir() -> Path:
    return Path(os.environ.get("CCP_HOME", os.path.expanduser("~/.ccp")))


def config_file() -> Path:
    return config_dir() / "config.json"


def load_file() -> dict[str, str]:
    """Defaults overlaid with the saved values. A corrupt file reads as defaults."""
    data = dict(DEFAULTS)
    path = config_file()
    if not path.exists():
        return data
    try:
        saved = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError):
        return data
    if isinstance(saved, dict):
        data.update({str(k).upper(): str(v) for k, v in saved.items()})
    return data


def save_file(values: dict[str, str]) -> None:
    """Persist only the values that differ from their defaults."""
    to_save = {k: v for k, v in values.items() if v != DEFAULTS.get(k)}
    path = config_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(to_save, indent=2) + "\n")


def get_value(key: str) -> str | None:
    return load_file().get(key.upper())


def set_value(key: str, value: str) -> None:
    key = key.upper()
    allowed = CONFIG_SCHEMA.get(key, {}).get("values")
    if allowed and value not in allowed:
        raise ConfigError(f"Invalid value {value!r} for {key}. Allowed values: {' | '.join(allowed)}")
    values = load_file()
    values[key] = value
    save_file(values)


def reset_value(key: str) -> None:
    key = key.upper()
    values = load_file()
    if key in DEFAULTS:
        values[key] = DEFAULTS[key]
    else:
        values.pop(key, None)
    save_file(values)


# --- Resolved config ---


def parse_size(value: str, fallback: int) -> int:
    """Parse sizes like ``10mb``, ``512kb`` or ``2048`` into bytes."""
    units = {"gb": 1024 ** 3, "mb": 1024 ** 2, "kb": 1024, "b": 1}
    text = (value or "").strip().lower()
    if not text:
        return fallback
    for suffix, factor in units.items():
        if text.endswith(suffix):
            number = text[: -len(suffix)].strip()
            break
    else:
        number, factor = text, 1
    try:
        size = float(number)
    except ValueError:
        return fallback
    return int(size * factor) if size > 0 else fallback


def _int(values: dict[str, str], key: str) -> int:
    raw = values.get(key, DEFAULTS[key])
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


@dataclass
class ProxyConfig:
    port: int = 8888
    host: str = "127.0.0.1"
    api_key: str = ""
    cors_origin: str = "*"
    claude_path: str = "claude"
    working_dir: str = ""
    permission_mode: str = "default"
    max_turns: int = 25
    timeout_s: float = 300.0
    session_ttl_s: float = 3600.0
    session_file: str = ""
    default_model: str = "claude-sonnet-4-5-20250929"
    log_level: str = "info"
    log_file: str = ""
    log_max_bytes: int = 10 * 1024 * 1024
    log_max_files: int = 5

    def __post_init__(self):
        if not self.working_dir:
            self.working_dir = os.getcwd()

    @classmethod
    def from_values(cls, values: dict[str, str]) -> "ProxyConfig":
        merged = {**DEFAULTS, **values}
        return cls(
            port=_int(merged, "PORT"),
            host=merged["HOST"],
            api_key=merged["API_KEY"],
            cors_origin=merged["CORS_ORIGIN"],
            claude_path=merged["CLAUDE_PATH"],
            working_dir=os.path.expanduser(merged["CLAUDE_WORKING_DIR"]) if merged["CLAUDE_WORKING_DIR"] else "",
            permission_mode=merged["CLAUDE_PERMISSION_MODE"],
            max_turns=_int(merged, "CLAUDE_MAX_TURNS"),
            timeout_s=_int(merged, "CLAUDE_TIMEOUT_MS") / 1000,
            session_ttl_s=_int(merged, "SESSION_TTL_MS") / 1000,
            session_file=merged["SESSION_FILE"],
            default_model=merged["DEFAULT_MODEL"],
            log_level=merged["LOG_LEVEL"].lower(),
            log_file=merged["LOG_FILE"],
            log_max_bytes=parse_size(merged["LOG_MAX_SIZE"], 10 * 1024 * 1024),
            log_max_files=_int(merged, "LOG_MAX_FILES"),
        )

    @classmethod
    def load(cls, overrides: dict[str, str] | None = None) -> "ProxyConfig":
        """Defaults < config file < environment < explicit overrides."""
        values = load_file()
        for key in CONFIG_SCHEMA:
            if key in os.environ:
                values[key] = os.environ[key]
        values.update({k: v for k, v in (overrides or {}).items() if v is not None})
        return cls.from_values(values)
