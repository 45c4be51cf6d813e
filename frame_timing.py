"""Timing transform: playback speed, reverse and encode drift correction."""

from __future__ import annotations

import math
from typing import Optional, Sequence, TypeVar

from toolchain import ConfigurationError, ExternalProcessFailure

T = TypeVar("T")

ATEMPO_MIN = 0.5
ATEMPO_MAX = 2.0


def format_factor(value: float) -> str:
    return f"{value:.6g}"


def _check_speed(speed: float) -> None:
    if speed <= 0:
        raise ConfigurationError("Speed must be > 0.")


# ── Animated images ────────────────────────────────────────────────────────────


def frame_stride(total: int, speed: float) -> int:
    """Step between kept frames when speeding an animation up.

    Faster playback drops frames instead of shortening delays, so a 20 frame
    animation at speed 2 keeps every 2nd frame.
    """
    _check_speed(speed)
    if speed <= 1 or total <= 0:
        return 1
    constraint = total / speed
    return max(1, math.ceil(round(total / constraint, 9)))


def select_frames(items: Sequence[T], speed: float) -> list[T]:
    return list(items)[::frame_stride(len(items), speed)]


def stretch_delays(delays: Sequence[float], speed: float) -> list[float]:
    """Slow playback down by stretching each delay; faster speeds keep delays."""
    _check_speed(speed)
    if speed >= 1:
        return list(delays)
    return [delay / speed for delay in delays]


def reverse_aligned(
    frames: Sequence[T],
    delays: Sequence[float],
) -> tuple[list[T], list[float]]:
    """Reverse frames and their delays together so indexes stay paired."""
    if len(frames) != len(delays):
        raise ValueError(
            f"Frame and delay sequences differ in length ({len(frames)} != {len(delays)})."
        )
    return list(reversed(frames)), list(reversed(delays))


# ── Video ──────────────────────────────────────────────────────────────────────


def pts_scale(speed: float) -> float:
    _check_speed(speed)
    return 1.0 / speed


def needs_correction(speed: float, reverse: bool) -> bool:
    return speed != 1 or reverse


def atempo_chain(tempo: float) -> str:
    """Split a tempo factor into chained atempo stages inside ffmpeg's range."""
    _check_speed(tempo)
    stages: list[float] = []
    while tempo > ATEMPO_MAX:
        stages.append(ATEMPO_MAX)
        tempo /= ATEMPO_MAX
    while tempo < ATEMPO_MIN:
        stages.append(ATEMPO_MIN)
        tempo /= ATEMPO_MIN
    stages.append(tempo)
    return ",".join(f"atempo={format_factor(stage)}" for stage in stages)


def retime_filter(speed: float, reverse: bool, has_audio: bool) -> str:
    video = f"[0:v]setpts={format_factor(pts_scale(speed))}*PTS"
    if reverse:
        video += ",reverse"
    parts = [f"{video}[v]"]

    if has_audio:
        audio = f"[0:a]{atempo_chain(speed)}"
        if reverse:
            audio += ",areverse"
        parts.append(f"{audio}[a]")
    return ";".join(parts)


def correction_filter(factor: float, has_audio: bool) -> str:
    parts = [f"[0:v]setpts={format_factor(factor)}*PTS[v]"]
    if has_audio:
        parts.append("[0:a]atempo=1[a]")
    return ";".join(parts)


def filter_maps(has_audio: bool) -> list[str]:
    maps = ["-map", "[v]"]
    if has_audio:
        maps.extend(["-map", "[a]"])
    return maps


def duration_correction(
    original_duration: float,
    speed: float,
    measured_duration: Optional[float],
) -> float:
    """Multiplicative PTS factor that pulls a retimed encode to its target length.

    The encoder rounds timestamps, so a single setpts pass drifts from
    ``original / speed``; the drift is treated as linear.
    """
    _check_speed(speed)
    if original_duration <= 0:
        raise ExternalProcessFailure("ffprobe", "source video reported no duration")
    if not measured_duration or measured_duration <= 0:
        raise ExternalProcessFailure("ffprobe", "retimed video reported no duration")
    return original_duration / speed / measured_duration
