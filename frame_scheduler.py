"""Bounded batch scheduler: fan frames out in ordered, fixed-size groups."""

from __future__ import annotations

import dataclasses
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from toolchain import CancelToken, ConfigurationError, progress_write

ProgressCallback = Callable[[int, int], Optional[bool]]
WorkFunction = Callable[["Frame"], Optional[Path]]


@dataclass(frozen=True)
class Frame:
    index: int
    source: Path
    dest: Path
    delay: Optional[float] = None


@dataclass
class FrameSet:
    """Frames in presentation order plus container-level timing."""

    frames: list[Frame] = field(default_factory=list)
    framerate: Optional[float] = None
    duration: Optional[float] = None
    audio: Optional[Path] = None

    def __len__(self) -> int:
        return len(self.frames)

    @property
    def delays(self) -> list[Optional[float]]:
        return [frame.delay for frame in self.frames]


@dataclass
class ProgressState:
    completed: int = 0
    total: int = 0
    cancelled: bool = False

    def cancel(self) -> None:
        # Once raised the flag never drops again.
        self.cancelled = True


@dataclass(frozen=True)
class FrameFailure:
    frame: Frame
    error: Exception


@dataclass
class BatchResult:
    outputs: list[Frame]
    failures: list[FrameFailure]
    progress: ProgressState
    groups_dispatched: int = 0

    @property
    def cancelled(self) -> bool:
        return self.progress.cancelled


def partition(frames: Sequence[Frame], size: int) -> list[list[Frame]]:
    """Split frames into contiguous groups of at most `size`."""
    if size < 1:
        raise ConfigurationError("Group size must be >= 1.")
    return [list(frames[start:start + size]) for start in range(0, len(frames), size)]


def _report(progress: Optional[ProgressCallback], state: ProgressState) -> bool:
    if progress is None:
        return False
    return bool(progress(state.completed, state.total))


def run_batch(
    frames: Iterable[Frame],
    work: WorkFunction,
    *,
    parallel: Optional[int] = None,
    limit: Optional[int] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> BatchResult:
    """Run `work` over frames, one group of `parallel` frames at a time.

    Only the first `limit` frames are ever dispatched. Every frame in a group
    settles before the next group starts. A failing frame is recorded in
    `failures` and left out of `outputs`; its siblings keep running. When the
    progress callback returns a truthy value, or `cancel` is cancelled, the
    current group drains and no further group is dispatched.

    `outputs` holds the successful frames sorted by index, with `dest` set to
    whatever path the work function returned.
    """
    parallel = 1 if parallel is None else parallel
    if parallel < 1:
        raise ConfigurationError("Parallel frames must be >= 1.")
    if limit is not None and limit < 0:
        raise ConfigurationError("Limit must be >= 0.")

    ordered = list(frames)
    count = len(ordered) if limit is None else min(limit, len(ordered))
    selected = ordered[:count]

    state = ProgressState(total=len(selected))
    outputs: list[Frame] = []
    failures: list[FrameFailure] = []
    groups_dispatched = 0

    if _report(progress, state):
        state.cancel()

    if selected:
        with ThreadPoolExecutor(max_workers=parallel, thread_name_prefix="frame") as executor:
            for group in partition(selected, parallel):
                if cancel is not None and cancel.cancelled:
                    state.cancel()
                if state.cancelled:
                    break

                groups_dispatched += 1
                futures = {executor.submit(work, frame): frame for frame in group}
                for future in as_completed(futures):
                    frame = futures[future]
                    try:
                        produced = future.result()
                    except Exception as exc:
                        failures.append(FrameFailure(frame=frame, error=exc))
                        progress_write(f"Warning: frame {frame.index} failed: {exc}")
                    else:
                        if produced is not None:
                            frame = dataclasses.replace(frame, dest=Path(produced))
                        outputs.append(frame)

                    state.completed += 1
                    if _report(progress, state):
                        state.cancel()

    outputs.sort(key=lambda item: item.index)
    return BatchResult(
        outputs=outputs,
        failures=failures,
        progress=state,
        groups_dispatched=groups_dispatched,
    )
