"""Toolchain: binary resolution, subprocess wrappers, cancellation and errors."""

from __future__ import annotations

import os
import platform
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from tqdm import tqdm

DEFAULT_POLL_INTERVAL = 1.0
VENDOR_DIR_NAMES = ("waifu2x", "waifu2x-converter-cpp")


# ── Errors ─────────────────────────────────────────────────────────────────────


class UpscaleError(Exception):
    """Base class for every error raised by the upscaling pipeline."""


class ExternalProcessFailure(UpscaleError, RuntimeError):
    """An external tool exited non-zero, was cancelled, or produced nothing."""

    def __init__(
        self,
        tool: str,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ):
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{tool} failed: {message}")


class ConfigurationError(UpscaleError, ValueError):
    """Invalid or missing option or path. Never retried or skipped."""


class WorkspaceError(UpscaleError, OSError):
    """Workspace directory could not be created or removed."""


# ── Toolchain ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: Optional[str]
    ffprobe: Optional[str]
    waifu2x_binary: Optional[Path]
    model_dir: Optional[Path]


class CancelToken:
    """Cooperative cancellation shared between a caller and running processes.

    `action` is polled every `poll_interval` seconds while an external process
    runs; returning ``"stop"`` cancels the token and interrupts the process.
    """

    def __init__(
        self,
        action: Optional[Callable[[], object]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        if poll_interval <= 0:
            raise ConfigurationError("Poll interval must be > 0.")
        self.action = action
        self.poll_interval = poll_interval
        self._event = threading.Event()
        self._poll_lock = threading.Lock()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self.action is not None:
            # Worker threads share one token; the action runs one call at a time.
            with self._poll_lock:
                if not self._event.is_set() and self.action() == "stop":
                    self._event.set()
        return self._event.is_set()


def progress_write(message: str) -> None:
    """Write a message without breaking active tqdm progress bars."""
    tqdm.write(message)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    tool = Path(str(cmd[0])).name
    try:
        return subprocess.run(
            [str(part) for part in cmd],
            check=check,
            capture_output=capture_output,
            text=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.strip() if exc.stderr else None
        raise ExternalProcessFailure(
            tool,
            f"exit status {exc.returncode}",
            returncode=exc.returncode,
            stderr=stderr,
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ExternalProcessFailure(tool, f"timed out after {timeout}s") from exc


def _interrupt_process(process: subprocess.Popen[str]) -> None:
    if platform.system().lower() == "windows":
        process.terminate()
    else:
        process.send_signal(signal.SIGINT)
    try:
        process.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()


def run_cancellable(
    cmd: Sequence[str],
    *,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess[str]:
    """Run a process that can be interrupted through `cancel` or a deadline.

    With neither a token nor a timeout this waits for the process forever.
    """
    tool = Path(str(cmd[0])).name
    if cancel is not None and cancel.cancelled:
        raise ExternalProcessFailure(tool, "cancelled before start")

    args = [str(part) for part in cmd]
    process = subprocess.Popen(
        args,
        cwd=str(cwd) if cwd else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    deadline = time.monotonic() + timeout if timeout else None
    while True:
        wait_for = cancel.poll_interval if cancel is not None else None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _interrupt_process(process)
                raise ExternalProcessFailure(tool, f"timed out after {timeout}s")
            wait_for = remaining if wait_for is None else min(wait_for, remaining)
        try:
            stdout, stderr = process.communicate(timeout=wait_for)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                _interrupt_process(process)
                raise ExternalProcessFailure(tool, "cancelled")

    if process.returncode != 0:
        raise ExternalProcessFailure(
            tool,
            f"exit status {process.returncode}",
            returncode=process.returncode,
            stderr=stderr.strip() if stderr else None,
        )
    return subprocess.CompletedProcess(args, process.returncode, stdout, stderr)


# ── Binary resolution ──────────────────────────────────────────────────────────


def get_waifu2x_binary_name() -> str:
    """Return the expected waifu2x-converter-cpp binary name for the current OS."""
    if platform.system().lower() == "windows":
        return "waifu2x-converter-cpp.exe"
    return "waifu2x-converter-cpp"


def find_bundled_waifu2x_binary(search_root: Path, binary_name: str) -> Optional[Path]:
    """Search a vendored `waifu2x/` folder under `search_root` for the binary."""
    for dir_name in VENDOR_DIR_NAMES:
        vendor_root = search_root / dir_name
        if not vendor_root.exists():
            continue

        for candidate in sorted(vendor_root.rglob(binary_name)):
            if not candidate.is_file():
                continue
            if platform.system().lower() == "windows":
                return candidate
            if os.access(candidate, os.X_OK):
                return candidate

    return None


def resolve_waifu2x_binary(
    custom_path: Optional[str],
    search_root: Optional[Path] = None,
) -> Path:
    """Resolve waifu2x from a custom file or folder, PATH, or a vendored location."""
    if search_root is None:
        search_root = Path.cwd()

    binary_name = get_waifu2x_binary_name()

    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if candidate.is_dir():
            candidate = candidate / binary_name
        if not candidate.is_file():
            raise ConfigurationError(f"waifu2x binary not found at: {candidate}")
        return candidate

    system_binary = shutil.which(binary_name)
    if system_binary:
        return Path(system_binary).resolve()

    bundled_binary = find_bundled_waifu2x_binary(search_root, binary_name)
    if bundled_binary:
        return bundled_binary.resolve()

    raise ConfigurationError(
        "Unable to locate waifu2x-converter-cpp. Install it in PATH or pass "
        "--waifu2x-path explicitly."
    )


def resolve_model_dir(custom_model_dir: Optional[str]) -> Optional[Path]:
    if not custom_model_dir:
        return None
    model_dir = Path(custom_model_dir).expanduser().resolve()
    if not model_dir.is_dir():
        raise ConfigurationError(f"Model directory not found: {model_dir}")
    return model_dir


def resolve_ffmpeg(ffmpeg_path: Optional[str]) -> tuple[str, str]:
    """Resolve ffmpeg and ffprobe, preferring an ffprobe beside a custom ffmpeg."""
    if ffmpeg_path:
        ffmpeg_bin = Path(ffmpeg_path).expanduser().resolve()
        if not ffmpeg_bin.is_file():
            raise ConfigurationError(f"ffmpeg not found at: {ffmpeg_bin}")
        sibling = ffmpeg_bin.with_name(ffmpeg_bin.name.replace("ffmpeg", "ffprobe"))
        ffprobe_bin = str(sibling) if sibling.is_file() else shutil.which("ffprobe")
        if not ffprobe_bin:
            raise ConfigurationError("Missing required dependency: ffprobe.")
        return str(ffmpeg_bin), ffprobe_bin

    ffmpeg_bin = shutil.which("ffmpeg")
    ffprobe_bin = shutil.which("ffprobe")
    if not ffmpeg_bin or not ffprobe_bin:
        missing = []
        if not ffmpeg_bin:
            missing.append("ffmpeg")
        if not ffprobe_bin:
            missing.append("ffprobe")
        raise ConfigurationError(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install with Homebrew (macOS) or your system package manager."
        )
    return ffmpeg_bin, ffprobe_bin


def resolve_toolchain(
    *,
    waifu2x_path: Optional[str] = None,
    model_dir: Optional[str] = None,
    ffmpeg_path: Optional[str] = None,
    need_waifu2x: bool = True,
    need_ffmpeg: bool = False,
) -> Toolchain:
    """Resolve only the binaries a job will actually invoke."""
    ffmpeg_bin: Optional[str] = None
    ffprobe_bin: Optional[str] = None
    if need_ffmpeg:
        ffmpeg_bin, ffprobe_bin = resolve_ffmpeg(ffmpeg_path)

    waifu2x_binary = resolve_waifu2x_binary(waifu2x_path) if need_waifu2x else None

    return Toolchain(
        ffmpeg=ffmpeg_bin,
        ffprobe=ffprobe_bin,
        waifu2x_binary=waifu2x_binary,
        model_dir=resolve_model_dir(model_dir),
    )
