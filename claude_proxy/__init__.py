"""claude-proxy: OpenAI-compatible chat-completions API backed by the Claude Code CLI."""

from importlib.metadata import PackageNotFoundError, version as _pkg_version

from .sessions import SessionStore
from .translator import StreamTranslator

try:
    __version__ = _pkg_version("claude-proxy")
except PackageNotFoundError:
    __version__ = "dev"

__all__ = ["SessionStore", "StreamTranslator", "__version__"]
