"""Working-directory handshake: decide where (and whether) the agent may run.

A new conversation must first name an existing directory. The proxy answers
that turn itself with a confirmation, and from then on the pair
(path, confirmation) found in the history pins the agent's working directory.
Conversations that already contain real assistant turns are treated as
pre-existing and use the configured default directory.
"""

import logging
import os
from dataclasses import dataclass

from .protocol import text_content

logger = logging.getLogger("claude_proxy.workdir")

BLOCKED_PREFIXES = ("/proc", "/sys", "/dev")

PATH_PROMPT = "\U0001F4C1 Please enter the working directory path (e.g.: ~/projects/myapp)"
PATH_INVALID = (
    "❌ Invalid directory path. Please enter a valid existing directory path "
    "(e.g.: ~/projects/myapp)"
)
_CONFIRMED_PREFIX = "✅ Working directory set:"
_MARKER_PREFIXES = ("✅", "\U0001F4C1", "❌")


def path_confirmed(path: str) -> str:
    return f"{_CONFIRMED_PREFIX} `{path}`\n\nNow working in this directory. How can I help you?"


def is_marker(text: str) -> bool:
    """True for the proxy's own synthetic prompt/invalid/confirmed replies."""
    return text.startswith(_MARKER_PREFIXES)


# --- Decisions ---


@dataclass(frozen=True)
class NeedPrompt:
    message: str = PATH_PROMPT


@dataclass(frozen=True)
class Invalid:
    path_text: str
    message: str = PATH_INVALID


@dataclass(frozen=True)
class Confirmed:
    path: str

    @property
    def message(self) -> str:
        return path_confirmed(self.path)


@dataclass(frozen=True)
class UseDefault:
    pass


@dataclass(frozen=True)
class Resume:
    path: str
    messages: list


Decision = NeedPrompt | Invalid | Confirmed | UseDefault | Resume


# --- Path resolution ---


def _is_blocked(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in BLOCKED_PREFIXES)


def resolve_path(text: str) -> str | None:
    """Resolve user text to an absolute, normalized path, or None if it is not path-shaped.

    Blocked pseudo-filesystems resolve to None. Symlinks are followed when the
    target exists.
    """
    text = text.strip()
    if not text.startswith(("~", "/")):
        return None
    expanded = os.path.expanduser(text)
    if not os.path.isabs(expanded):
        return None
    resolved = os.path.normpath(os.path.abspath(expanded))
    if _is_blocked(resolved):
        return None
    if os.path.exists(resolved):
        try:
            resolved = os.path.realpath(resolved, strict=True)
        except OSError:
            pass
        if _is_blocked(resolved):
            return None
    return resolved


def is_valid_directory(path: str | None) -> bool:
    if not path:
        return False
    try:
        return os.path.isdir(path)
    except OSError:
        return False


def _confirmed_directory(text: str) -> str | None:
    resolved = resolve_path(text)
    return resolved if is_valid_directory(resolved) else None


# --- State machine ---


def decide(messages: list[dict]) -> Decision:
    """Pure decision over the full message list of one request."""
    system = [m for m in messages if m.get("role") == "system"]
    turns = [m for m in messages if m.get("role") != "system"]

    for i, msg in enumerate(turns):
        if msg.get("role") != "user":
            continue
        path = _confirmed_directory(text_content(msg.get("content")))
        if path is None:
            continue
        if i + 1 < len(turns) and turns[i + 1].get("role") == "assistant":
            remaining = turns[:i] + turns[i + 2:]
            return Resume(path=path, messages=system + remaining)

    if any(
        m.get("role") == "assistant" and not is_marker(text_content(m.get("content")))
        for m in turns
    ):
        return UseDefault()

    user_turns = [m for m in turns if m.get("role") == "user"]
    last_text = text_content(user_turns[-1].get("content")).strip() if user_turns else ""
    resolved = resolve_path(last_text)
    if resolved is not None and is_valid_directory(resolved):
        return Confirmed(path=resolved)
    if resolved is not None:
        return Invalid(path_text=last_text)
    return NeedPrompt()
