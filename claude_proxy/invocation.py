"""Agent process invocation: prompt building, spawning, timeout and cancellation."""

import asyncio
import base64
import binascii
import enum
import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
import uuid
from pathlib import Path
from typing import AsyncIterator

from .config import ProxyConfig
from .events import AgentEvent, iter_events
from .protocol import text_content

logger = logging.getLogger("claude_proxy.invocation")

IMAGE_TMP_DIR = Path(tempfile.gettempdir()) / "claude-proxy-images"

KILL_GRACE_S = 5.0
READ_CHUNK_SIZE = 64 * 1024

_DATA_URL_RE = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)


class AgentSpawnError(RuntimeError):
    """The agent binary could not be started."""


# --- Startup / shutdown helpers ---


def validate_agent_binary(path: str) -> str:
    """Run ``<path> --version`` once at startup and return its output.

    A missing or non-executable binary raises AgentSpawnError; any other
    failure (e.g. an unknown flag) is only logged since the binary exists.
    """
    try:
        proc = subprocess.run(
            [path, "--version"],
            capture_output=True,
            text=True,
            timeout=10,
            stdin=subprocess.DEVNULL,
        )
    except FileNotFoundError:
        raise AgentSpawnError(
            f'Claude CLI not found at "{path}". Please install it '
            "(https://docs.anthropic.com/en/docs/claude-code) or set CLAUDE_PATH to the correct path."
        ) from None
    except PermissionError:
        raise AgentSpawnError(
            f'Claude CLI at "{path}" is not executable. Please check file permissions (chmod +x).'
        ) from None
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Claude CLI found but --version failed: %s", exc)
        return ""
    version = proc.stdout.strip()
    if proc.returncode != 0:
        logger.warning("Claude CLI found but --version exited with %s", proc.returncode)
    else:
        logger.info("Claude CLI found: %s", version)
    return version


def cleanup_temp_images() -> None:
    if not IMAGE_TMP_DIR.exists():
        return
    try:
        shutil.rmtree(IMAGE_TMP_DIR)
        logger.info("Removed temp image directory: %s", IMAGE_TMP_DIR)
    except OSError:
        logger.exception("Failed to remove temp images")


# --- Prompt building ---


def save_data_url_image(data_url: str, directory: Path = IMAGE_TMP_DIR) -> Path | None:
    """Write an inline ``data:image/...;base64`` URL to a uniquely named private file."""
    match = _DATA_URL_RE.match(data_url)
    if not match:
        return None
    ext = "jpg" if match.group(1) == "jpeg" else match.group(1)
    try:
        data = base64.b64decode(match.group(2), validate=False)
    except (binascii.Error, ValueError):
        return None
    directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    path = directory / f"{uuid.uuid4()}.{ext}"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    return path


def content_with_images(content, directory: Path = IMAGE_TMP_DIR) -> str:
    """Message text with image parts replaced by textual references."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue
        if part.get("type") == "text" and part.get("text"):
            parts.append(part["text"])
        elif part.get("type") == "image_url":
            image = part.get("image_url") or {}
            url = image.get("url", "") if isinstance(image, dict) else str(image)
            if not url:
                continue
            if url.startswith("data:image/"):
                path = save_data_url_image(url, directory)
                if path is not None:
                    parts.append(f"[User sent an image, saved at: {path} - use the Read tool to view it]")
            else:
                parts.append(f"[User sent an image: {url}]")
    return "\n".join(parts)


def build_prompt(messages: list[dict], resuming: bool, image_dir: Path = IMAGE_TMP_DIR) -> str:
    """Collapse the message list into the single prompt the agent takes.

    A resumed session already holds the history, so only the newest turn is
    sent. Otherwise non-system turns are rendered as ``Role: text`` blocks.
    """
    if not messages:
        return ""
    last = messages[-1]
    if resuming or len(messages) == 1:
        return content_with_images(last.get("content"), image_dir)

    turns = [m for m in messages if m.get("role") != "system"]
    if len(turns) == 1:
        return content_with_images(turns[0].get("content"), image_dir)

    blocks = []
    for msg in turns:
        label = "User" if msg.get("role") == "user" else "Assistant"
        blocks.append(f"{label}: {content_with_images(msg.get('content'), image_dir)}")
    return "\n\n".join(blocks)


def build_args(
    config: ProxyConfig,
    prompt: str,
    model: str,
    session_id: str | None = None,
    system_prompt: str | None = None,
) -> list[str]:
    args = [
        "-p", prompt,
        "--output-format", "stream-json",
        "--verbose",
        "--include-partial-messages",
        "--model", model,
        "--permission-mode", config.permission_mode,
        "--max-turns", str(config.max_turns),
    ]
    if session_id:
        args.extend(["--resume", session_id])
    if system_prompt:
        args.extend(["--system-prompt", system_prompt])
    return args


# --- Process handle ---


class ProcessState(str, enum.Enum):
    RUNNING = "running"
    TIMED_OUT = "timed_out"
    EXITED = "exited"


class AgentProcess:
    """Owned handle on one running agent invocation.

    stdout is consumed through ``events()``; stderr is drained in the
    background into ``stderr``. A watchdog terminates the process when the
    timeout expires. ``cancel()`` runs the same SIGTERM-then-SIGKILL sequence
    immediately.
    """

    def __init__(self, proc: asyncio.subprocess.Process, timeout: float, kill_grace: float = KILL_GRACE_S):
        self.proc = proc
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.timed_out = False
        self.terminate_requested = False
        self._stderr_parts: list[str] = []
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._watchdog = asyncio.create_task(self._expire()) if timeout > 0 else None
        self._killer: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    @property
    def state(self) -> ProcessState:
        if self.proc.returncode is not None:
            return ProcessState.EXITED
        if self.timed_out:
            return ProcessState.TIMED_OUT
        return ProcessState.RUNNING

    @property
    def stderr(self) -> str:
        return "".join(self._stderr_parts)

    # --- Output ---

    async def _drain_stderr(self) -> None:
        if self.proc.stderr is None:
            return
        while True:
            data = await self.proc.stderr.read(READ_CHUNK_SIZE)
            if not data:
                break
            self._stderr_parts.append(data.decode("utf-8", errors="replace"))

    async def _stdout_chunks(self) -> AsyncIterator[bytes]:
        if self.proc.stdout is None:
            return
        while True:
            data = await self.proc.stdout.read(READ_CHUNK_SIZE)
            if not data:
                break
            yield data

    async def events(self) -> AsyncIterator[AgentEvent]:
        """Agent events in output order, until the process closes stdout."""
        async for event in iter_events(self._stdout_chunks()):
            yield event

    # --- Termination ---

    async def _expire(self) -> None:
        await asyncio.sleep(self.timeout)
        if self.proc.returncode is not None or self.terminate_requested:
            return
        logger.warning("Timeout after %.0fs, killing process (pid=%s)", self.timeout, self.pid)
        self.timed_out = True
        self.cancel()

    async def _kill_after_grace(self) -> None:
        try:
            await asyncio.wait_for(self.proc.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            try:
                self.proc.kill()
                logger.warning("Process did not exit after SIGTERM, sent SIGKILL (pid=%s)", self.pid)
            except ProcessLookupError:
                pass

    def cancel(self) -> None:
        """SIGTERM now, SIGKILL after the grace period. Repeated calls are no-ops."""
        if self.terminate_requested or self.proc.returncode is not None:
            return
        self.terminate_requested = True
        try:
            self.proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        self._killer = asyncio.create_task(self._kill_after_grace())

    async def wait(self) -> int:
        """Reap the process and its helper tasks; returns the exit code."""
        code = await self.proc.wait()
        if self._watchdog is not None:
            self._watchdog.cancel()
        await self._stderr_task
        if self._killer is not None:
            await self._killer
        if code > 0:
            logger.warning("Process exited with code %s (pid=%s)", code, self.pid)
        elif code < 0:
            logger.debug("Process terminated by signal %s (pid=%s)", -code, self.pid)
        return code

    async def finish(self) -> str:
        """Wait for exit and return the complete stderr text."""
        await self.wait()
        return self.stderr


async def spawn_agent(
    config: ProxyConfig,
    messages: list[dict],
    model: str,
    session_id: str | None = None,
    cwd: str | None = None,
) -> AgentProcess:
    """Start one agent invocation for ``messages``."""
    prompt = build_prompt(messages, resuming=session_id is not None)
    system = next((m for m in messages if m.get("role") == "system"), None)
    system_prompt = text_content(system.get("content")) if system else None
    args = build_args(config, prompt, model, session_id, system_prompt)

    env = {**os.environ, "CLAUDECODE": ""}
    try:
        proc = await asyncio.create_subprocess_exec(
            config.claude_path,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd or config.working_dir,
            env=env,
        )
    except OSError as exc:
        logger.error("Failed to spawn process: %s", exc)
        raise AgentSpawnError(f"Failed to start Claude CLI: {exc}") from exc

    logger.debug("Spawned %s (pid=%s) cwd=%s", config.claude_path, proc.pid, cwd or config.working_dir)
    return AgentProcess(proc, timeout=config.timeout_s)
