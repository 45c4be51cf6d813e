"""Job workspace lifecycle and directory walking."""

from __future__ import annotations

import contextlib
import re
import shutil
from pathlib import Path
from typing import Iterator, Union

from toolchain import ConfigurationError, WorkspaceError, progress_write

UPSCALED_DIR_NAME = "upscaled"

PathLike = Union[str, Path]


def workspace_path_for(source: Path, folder: Path) -> Path:
    return folder / f"{source.stem}Frames"


def is_protected_path(path: PathLike) -> bool:
    """True for the current-directory sentinel and filesystem roots."""
    raw = Path(path)
    if raw == Path("."):
        return True
    resolved = raw.expanduser().resolve()
    return resolved == Path(resolved.anchor)


def acquire(path: PathLike) -> Path:
    """Create a fresh workspace, discarding leftovers from an earlier run."""
    if is_protected_path(path):
        raise ConfigurationError(f"Refusing to use {path!s} as a workspace.")

    root = Path(path).expanduser().resolve()
    try:
        if root.exists():
            shutil.rmtree(root)
        (root / UPSCALED_DIR_NAME).mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise WorkspaceError(f"Could not create workspace {root}: {exc}") from exc
    return root


def release(path: PathLike) -> None:
    """Recursively delete a workspace. Never raises."""
    if is_protected_path(path):
        progress_write(f"Warning: refusing to remove protected path {path!s}.")
        return

    root = Path(path)
    if not root.exists():
        return
    try:
        shutil.rmtree(root)
    except OSError as exc:
        progress_write(f"Warning: could not remove workspace {root}: {exc}")


@contextlib.contextmanager
def job_workspace(path: PathLike) -> Iterator[Path]:
    root = acquire(path)
    try:
        yield root
    finally:
        release(root)


def natural_key(name: str) -> tuple:
    """Sort key that orders embedded numbers numerically (frame2 < frame10)."""
    return tuple(
        int(part) if part.isdigit() else part.lower()
        for part in re.split(r"(\d+)", name)
    )


def walk_files(folder: Path, *, recursive: bool = False) -> Iterator[Path]:
    """Yield files in `folder`, then those of its sub-folders when recursive."""
    entries = sorted(folder.iterdir(), key=lambda entry: natural_key(entry.name))
    subfolders = []
    for entry in entries:
        if entry.is_file():
            yield entry
        elif entry.is_dir():
            subfolders.append(entry)

    if recursive:
        for subfolder in subfolders:
            yield from walk_files(subfolder, recursive=True)
