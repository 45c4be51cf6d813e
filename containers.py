"""External transforms: waifu2x frame upscaling and container decode/encode."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from PIL import Image, ImageSequence

from cli import UpscaleOptions
from frame_scheduler import Frame, FrameSet
from frame_timing import (
    correction_filter,
    filter_maps,
    retime_filter,
    select_frames,
)
from toolchain import (
    CancelToken,
    ConfigurationError,
    ExternalProcessFailure,
    Toolchain,
    progress_write,
    run_cancellable,
    run_subprocess,
)
from workspace import UPSCALED_DIR_NAME, natural_key

DEFAULT_FPS = 30.0
DEFAULT_GIF_DELAY_MS = 100.0

VIDEO_FRAME_PATTERN = "frame%d.png"
VIDEO_FRAME_GLOB = "frame*.png"
SEQUENCE_PATTERN = "seq_%08d.png"
EVEN_CROP = "crop=trunc(iw/2)*2:trunc(ih/2)*2"
QUIET_FLAGS = ["-y", "-hide_banner", "-loglevel", "warning"]


@dataclass(frozen=True)
class VideoInfo:
    framerate: float
    width: int
    height: int
    duration_seconds: float
    has_audio: bool


# ── Single frame ───────────────────────────────────────────────────────────────


def build_waifu2x_command(
    waifu2x_binary: Path,
    source: Path,
    dest: Path,
    options: UpscaleOptions,
    model_dir: Optional[Path] = None,
) -> list[str]:
    cmd = [
        str(waifu2x_binary),
        "-i",
        str(source),
        "-o",
        str(dest),
        "-s",
        "--scale-ratio",
        f"{options.scale:g}",
    ]

    if options.noise is not None:
        cmd.extend(["--noise-level", str(options.noise)])
    if options.mode:
        cmd.extend(["-m", options.mode])
    if options.png_compression is not None:
        cmd.extend(["-c", str(options.png_compression)])
    if options.jpg_webp_quality is not None:
        cmd.extend(["-q", str(options.jpg_webp_quality)])
    if options.block_size is not None:
        cmd.extend(["--block-size", str(options.block_size)])
    if options.disable_gpu:
        cmd.append("--disable-gpu")
    if options.force_opencl:
        cmd.append("--force-OpenCL")
    if options.processor is not None:
        cmd.extend(["-p", str(options.processor)])
    if options.threads is not None:
        cmd.extend(["-j", str(options.threads)])
    if model_dir is not None:
        cmd.extend(["--model-dir", str(model_dir)])

    return cmd


def upscale_frame(
    toolchain: Toolchain,
    source: Path,
    dest: Path,
    options: UpscaleOptions,
    cancel: Optional[CancelToken] = None,
) -> Path:
    """Upscale one image file with waifu2x and return the written path."""
    if toolchain.waifu2x_binary is None:
        raise ConfigurationError("waifu2x binary was not resolved for this job.")

    cmd = build_waifu2x_command(
        toolchain.waifu2x_binary,
        source,
        dest,
        options,
        model_dir=toolchain.model_dir,
    )
    run_cancellable(
        cmd,
        cancel=cancel,
        timeout=options.timeout,
        cwd=toolchain.waifu2x_binary.parent,
    )
    if not dest.exists() or dest.stat().st_size == 0:
        raise ExternalProcessFailure("waifu2x", f"no output written for {source.name}")
    return dest


# ── Animated images ────────────────────────────────────────────────────────────


def frame_delay(frame_info: dict, image_info: dict) -> float:
    """Delay of one frame in milliseconds. A stored 0 stays 0."""
    delay = frame_info.get("duration")
    if delay is None:
        delay = image_info.get("duration")
    if delay is None:
        return DEFAULT_GIF_DELAY_MS
    return float(delay)


def decode_gif(
    source: Path,
    frames_dir: Path,
    *,
    speed: float = 1.0,
    cumulative: bool = False,
) -> FrameSet:
    """Write the kept frames of an animated image as PNGs with their delays.

    Speeds above 1 keep only every n-th frame. With `cumulative`, each frame
    is composited over the previous ones before it is written.
    """
    upscaled_dir = frames_dir / UPSCALED_DIR_NAME
    frames: list[Frame] = []
    with Image.open(source) as image:
        total = getattr(image, "n_frames", 1)
        kept = set(select_frames(range(total), speed))
        canvas: Optional[Image.Image] = None

        for position, frame in enumerate(ImageSequence.Iterator(image)):
            rgba = frame.convert("RGBA")
            if cumulative:
                if canvas is not None and canvas.size == rgba.size:
                    rgba = Image.alpha_composite(canvas, rgba)
                canvas = rgba
            if position not in kept:
                continue

            delay = frame_delay(frame.info, image.info)
            frame_path = frames_dir / f"frame{position}.png"
            rgba.save(frame_path)
            frames.append(
                Frame(
                    index=len(frames),
                    source=frame_path,
                    dest=upscaled_dir / frame_path.name,
                    delay=delay,
                )
            )

    return FrameSet(frames=frames)


def palette_colors(quality: int) -> int:
    """Map GIF quality (1 best, higher is coarser) to a palette size."""
    return max(2, min(256, 2560 // max(quality, 1)))


def encode_gif(
    frame_paths: Sequence[Path],
    delays: Sequence[float],
    dest: Path,
    quality: int = 10,
) -> Path:
    """Encode frames into a looping GIF, sized to the first frame."""
    if not frame_paths:
        raise ExternalProcessFailure("gif encoder", "no frames to encode")
    if len(frame_paths) != len(delays):
        raise ValueError("Every GIF frame needs exactly one delay.")

    colors = palette_colors(quality)
    images: list[Image.Image] = []
    size: Optional[tuple[int, int]] = None
    for path in frame_paths:
        with Image.open(path) as frame:
            rgb = frame.convert("RGB")
        if size is None:
            size = rgb.size
        elif rgb.size != size:
            rgb = rgb.resize(size, Image.Resampling.LANCZOS)
        images.append(rgb.quantize(colors=colors))

    dest.parent.mkdir(parents=True, exist_ok=True)
    images[0].save(
        dest,
        format="GIF",
        save_all=True,
        append_images=images[1:],
        duration=[max(int(round(delay)), 0) for delay in delays],
        loop=0,
    )
    return dest


# ── Video ──────────────────────────────────────────────────────────────────────


def parse_framerate(value: str) -> float:
    """Parse ffprobe framerate strings like 30000/1001 safely."""
    if not value:
        return DEFAULT_FPS

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return DEFAULT_FPS
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError):
        return DEFAULT_FPS

    if framerate <= 0:
        return DEFAULT_FPS
    return framerate


def get_video_info(ffprobe_bin: str, source: Path) -> VideoInfo:
    """Read framerate, size, duration and audio presence with ffprobe."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(source),
    ]
    result = run_subprocess(cmd, capture_output=True)

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise ExternalProcessFailure("ffprobe", f"unreadable output: {exc}") from exc

    video_stream = None
    audio_stream = None
    for stream in payload.get("streams", []):
        stream_type = stream.get("codec_type")
        if stream_type == "video" and video_stream is None:
            video_stream = stream
        elif stream_type == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        raise ExternalProcessFailure("ffprobe", f"no video stream in {source.name}")

    duration_raw = (
        payload.get("format", {}).get("duration")
        or video_stream.get("duration")
        or "0"
    )
    try:
        duration_seconds = max(float(duration_raw), 0.0)
    except (TypeError, ValueError):
        duration_seconds = 0.0

    return VideoInfo(
        framerate=parse_framerate(
            video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate", "")
        ),
        width=int(video_stream.get("width", 0)),
        height=int(video_stream.get("height", 0)),
        duration_seconds=duration_seconds,
        has_audio=audio_stream is not None,
    )


def extract_video_frames(
    ffmpeg_bin: str,
    source: Path,
    frames_dir: Path,
    *,
    framerate: float,
) -> list[Path]:
    """Extract numbered PNG frames at `framerate`, in presentation order."""
    cmd = [
        ffmpeg_bin,
        "-i",
        str(source),
        "-r",
        f"{framerate:g}",
        "-start_number",
        "1",
        str(frames_dir / VIDEO_FRAME_PATTERN),
        *QUIET_FLAGS,
    ]
    run_subprocess(cmd)

    frames = sorted(frames_dir.glob(VIDEO_FRAME_GLOB), key=lambda path: natural_key(path.name))
    if not frames:
        raise ExternalProcessFailure("ffmpeg", "frame extraction produced zero frames")
    return frames


def extract_audio(
    ffmpeg_bin: str,
    source: Path,
    workspace_root: Path,
    *,
    has_audio: bool,
) -> Optional[Path]:
    """Extract the first audio stream, or return None when there is none."""
    if not has_audio:
        return None

    copy_target = workspace_root / "audio_track.mka"
    copy_cmd = [
        ffmpeg_bin,
        "-i",
        str(source),
        "-vn",
        "-map",
        "0:a:0",
        "-c:a",
        "copy",
        str(copy_target),
        *QUIET_FLAGS,
    ]
    copy_result = run_subprocess(copy_cmd, check=False, capture_output=True)
    if copy_result.returncode == 0 and copy_target.exists():
        return copy_target

    # Stream copy fails for some codecs; transcode to AAC instead.
    transcode_target = workspace_root / "audio_track.m4a"
    transcode_cmd = [
        ffmpeg_bin,
        "-i",
        str(source),
        "-vn",
        "-map",
        "0:a:0",
        "-c:a",
        "aac",
        "-b:a",
        "192k",
        str(transcode_target),
        *QUIET_FLAGS,
    ]
    transcode_result = run_subprocess(transcode_cmd, check=False, capture_output=True)
    if transcode_result.returncode == 0 and transcode_target.exists():
        return transcode_target

    progress_write("Warning: Audio extraction failed. Continuing without audio.")
    return None


def stage_sequence(frame_paths: Sequence[Path], target_dir: Path) -> Path:
    """Move ordered frames to a gap-free numbered sequence; return its pattern."""
    target_dir.mkdir(parents=True, exist_ok=True)
    for number, path in enumerate(frame_paths, start=1):
        path.replace(target_dir / (SEQUENCE_PATTERN % number))
    return target_dir / SEQUENCE_PATTERN


def get_codec_flags(crf: int) -> list[str]:
    return [
        "-c:v",
        "libx264",
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "+faststart",
        "-crf",
        str(crf),
    ]


def encode_video(
    ffmpeg_bin: str,
    frame_pattern: Path,
    dest: Path,
    *,
    framerate: float,
    audio_path: Optional[Path],
    crf: int,
) -> Path:
    cmd = [ffmpeg_bin, "-framerate", f"{framerate:g}", "-i", str(frame_pattern)]
    if audio_path is not None:
        cmd.extend(["-i", str(audio_path)])

    cmd.extend(["-map", "0:v:0"])
    if audio_path is not None:
        cmd.extend(["-map", "1:a:0"])

    cmd.extend(["-vf", EVEN_CROP, "-r", f"{framerate:g}"])
    cmd.extend(get_codec_flags(crf))
    if audio_path is not None:
        cmd.extend(["-c:a", "aac", "-shortest"])
    cmd.extend([str(dest), *QUIET_FLAGS])

    run_subprocess(cmd)
    return dest


def retime_video(
    ffmpeg_bin: str,
    source: Path,
    dest: Path,
    *,
    speed: float,
    reverse: bool,
    has_audio: bool,
    framerate: float,
    crf: int,
) -> Path:
    cmd = [
        ffmpeg_bin,
        "-i",
        str(source),
        "-filter_complex",
        retime_filter(speed, reverse, has_audio),
        *filter_maps(has_audio),
        "-r",
        f"{framerate:g}",
        *get_codec_flags(crf),
        str(dest),
        *QUIET_FLAGS,
    ]
    run_subprocess(cmd)
    return dest


def correct_video(
    ffmpeg_bin: str,
    source: Path,
    dest: Path,
    *,
    factor: float,
    has_audio: bool,
    framerate: float,
    crf: int,
) -> Path:
    cmd = [
        ffmpeg_bin,
        "-i",
        str(source),
        "-filter_complex",
        correction_filter(factor, has_audio),
        *filter_maps(has_audio),
        "-r",
        f"{framerate:g}",
        *get_codec_flags(crf),
        str(dest),
        *QUIET_FLAGS,
    ]
    run_subprocess(cmd)
    return dest
