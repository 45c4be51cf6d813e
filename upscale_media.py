#!/usr/bin/env python3
"""
Frame batch upscaler (waifu2x-converter-cpp).

Images are upscaled directly. Animated GIFs and videos are split into frames,
upscaled in bounded parallel groups, and reassembled with their timing.
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import functools
import itertools
import shutil
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, Union

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from tqdm import tqdm

from cli import (
    DEFAULT_RENAME,
    AnyOptions,
    GifOptions,
    UpscaleOptions,
    VideoOptions,
    options_from_args,
    parse_args,
    resolve_destination,
    validate_options,
)
from containers import (
    correct_video,
    decode_gif,
    encode_gif,
    encode_video,
    extract_audio,
    extract_video_frames,
    get_video_info,
    retime_video,
    stage_sequence,
    upscale_frame,
)
from frame_scheduler import Frame, FrameSet, ProgressCallback, WorkFunction, run_batch
from frame_timing import (
    duration_correction,
    needs_correction,
    reverse_aligned,
    stretch_delays,
)
from toolchain import (
    CancelToken,
    ConfigurationError,
    ExternalProcessFailure,
    Toolchain,
    UpscaleError,
    progress_write,
    resolve_toolchain,
)
from workspace import UPSCALED_DIR_NAME, job_workspace, walk_files, workspace_path_for

PathLike = Union[str, Path]

OTLP_ENDPOINT = "http://localhost:4318/v1/traces"

tracer = trace.get_tracer(__name__)
_tracing_ready = False


def init_tracing() -> None:
    """Install an SDK tracer provider exporting spans to the local OTLP endpoint."""
    global _tracing_ready
    if _tracing_ready:
        return

    resource = Resource.create({"service.name": "frame-upscale"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT)))
    trace.set_tracer_provider(provider)
    _tracing_ready = True


def _traced(func):
    """Decorator that wraps a function call in a tracing span."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with tracer.start_as_current_span(func.__name__):
            return func(*args, **kwargs)

    return wrapper


class JobState(str, Enum):
    PENDING = "pending"
    WORKSPACE_ACQUIRED = "workspace_acquired"
    DECOMPOSED = "decomposed"
    SCHEDULING = "scheduling"
    TIMING_CORRECTED = "timing_corrected"
    REASSEMBLED = "reassembled"
    RELEASED = "released"
    FAILED = "failed"


@dataclass(frozen=True)
class Job:
    source: Path
    dest: Path
    options: AnyOptions
    progress: Optional[ProgressCallback] = None


@dataclass
class JobRun:
    job: Job
    state: JobState = JobState.PENDING
    history: list[JobState] = field(default_factory=lambda: [JobState.PENDING])

    def advance(self, state: JobState) -> None:
        self.state = state
        self.history.append(state)


@contextlib.contextmanager
def track_job(job: Job) -> Iterator[JobRun]:
    """Record job states; a failure is reported with the state it happened in.

    Workspaces are opened inside this block, so they are already released by
    the time a failure reaches it.
    """
    run = JobRun(job)
    try:
        yield run
    except BaseException:
        failed_in = run.state
        run.advance(JobState.FAILED)
        run.advance(JobState.RELEASED)
        progress_write(f"Error: {job.source.name} failed while {failed_in.value}.")
        raise
    run.advance(JobState.RELEASED)


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


def _resolve_source(source: PathLike, *, folder: bool = False) -> Path:
    path = Path(source).expanduser().resolve()
    if folder and not path.is_dir():
        raise ConfigurationError(f"Input folder not found: {path}")
    if not folder and not path.is_file():
        raise ConfigurationError(f"Input file not found: {path}")
    return path


def _toolchain_for(
    options: AnyOptions,
    *,
    need_ffmpeg: bool = False,
) -> Toolchain:
    ffmpeg_path = options.ffmpeg_path if isinstance(options, VideoOptions) else None
    return resolve_toolchain(
        waifu2x_path=options.waifu2x_path,
        model_dir=options.model_dir,
        ffmpeg_path=ffmpeg_path,
        need_waifu2x=options.scale != 1,
        need_ffmpeg=need_ffmpeg,
    )


def _frame_worker(
    toolchain: Toolchain,
    options: UpscaleOptions,
    cancel: Optional[CancelToken],
) -> WorkFunction:
    def work(frame: Frame) -> Path:
        return upscale_frame(toolchain, frame.source, frame.dest, options, cancel)

    return work


def _passthrough(frames: Sequence[Frame]) -> list[Frame]:
    return [dataclasses.replace(frame, dest=frame.source) for frame in frames]


# ── Single items ───────────────────────────────────────────────────────────────


@_traced
def upscale_image(
    source: PathLike,
    dest: Optional[str] = None,
    options: Optional[UpscaleOptions] = None,
    cancel: Optional[CancelToken] = None,
    toolchain: Optional[Toolchain] = None,
) -> Path:
    """Upscale a single image. A scale of 1 copies the source unchanged."""
    options = options or UpscaleOptions()
    validate_options(options)
    source_path = _resolve_source(source)
    destination = resolve_destination(source_path, dest, options.rename)
    destination.parent.mkdir(parents=True, exist_ok=True)

    if options.scale == 1:
        if destination != source_path:
            shutil.copy2(source_path, destination)
        return destination

    if toolchain is None:
        toolchain = _toolchain_for(options)
    return upscale_frame(toolchain, source_path, destination, options, cancel)


@_traced
def upscale_gif(
    source: PathLike,
    dest: Optional[str] = None,
    options: Optional[GifOptions] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
    toolchain: Optional[Toolchain] = None,
) -> Path:
    options = options or GifOptions()
    validate_options(options)
    source_path = _resolve_source(source)
    destination = resolve_destination(source_path, dest, DEFAULT_RENAME)
    destination.parent.mkdir(parents=True, exist_ok=True)
    if toolchain is None and options.scale != 1:
        toolchain = _toolchain_for(options)

    job = Job(source=source_path, dest=destination, options=options, progress=progress)
    with track_job(job) as run:
        with job_workspace(workspace_path_for(source_path, destination.parent)) as root:
            run.advance(JobState.WORKSPACE_ACQUIRED)
            frame_set = decode_gif(
                source_path,
                root,
                speed=options.speed,
                cumulative=options.cumulative,
            )
            run.advance(JobState.DECOMPOSED)

            if options.scale != 1:
                run.advance(JobState.SCHEDULING)
                result = run_batch(
                    frame_set.frames,
                    _frame_worker(toolchain, options, cancel),
                    parallel=options.parallel_frames,
                    progress=progress,
                    cancel=cancel,
                )
                frames = result.outputs
            else:
                frames = _passthrough(frame_set.frames)

            paths = [frame.dest for frame in frames]
            delays = stretch_delays([frame.delay for frame in frames], options.speed)
            if options.reverse:
                paths, delays = reverse_aligned(paths, delays)
            run.advance(JobState.TIMING_CORRECTED)

            encode_gif(paths, delays, destination, options.quality)
            run.advance(JobState.REASSEMBLED)

    return destination


@_traced
def upscale_video(
    source: PathLike,
    dest: Optional[str] = None,
    options: Optional[VideoOptions] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
    toolchain: Optional[Toolchain] = None,
) -> Path:
    options = options or VideoOptions()
    validate_options(options)
    source_path = _resolve_source(source)
    destination = resolve_destination(source_path, dest, DEFAULT_RENAME)
    destination.parent.mkdir(parents=True, exist_ok=True)
    if toolchain is None:
        toolchain = _toolchain_for(options, need_ffmpeg=True)

    info = get_video_info(toolchain.ffprobe, source_path)
    framerate = options.framerate or info.framerate

    job = Job(source=source_path, dest=destination, options=options, progress=progress)
    with track_job(job) as run:
        with job_workspace(workspace_path_for(source_path, destination.parent)) as root:
            run.advance(JobState.WORKSPACE_ACQUIRED)
            upscaled_dir = root / UPSCALED_DIR_NAME
            raw_frames = extract_video_frames(toolchain.ffmpeg, source_path, root, framerate=framerate)
            audio_path = extract_audio(toolchain.ffmpeg, source_path, root, has_audio=info.has_audio)
            frame_set = FrameSet(
                frames=[
                    Frame(index=index, source=path, dest=upscaled_dir / path.name)
                    for index, path in enumerate(raw_frames)
                ],
                framerate=framerate,
                duration=info.duration_seconds,
                audio=audio_path,
            )
            run.advance(JobState.DECOMPOSED)

            if options.scale != 1:
                run.advance(JobState.SCHEDULING)
                result = run_batch(
                    frame_set.frames,
                    _frame_worker(toolchain, options, cancel),
                    parallel=options.parallel_frames,
                    progress=progress,
                    cancel=cancel,
                )
                frames = result.outputs
            else:
                frames = _passthrough(frame_set.frames)
            if not frames:
                raise ExternalProcessFailure("waifu2x", f"no frames of {source_path.name} were upscaled")

            pattern = stage_sequence([frame.dest for frame in frames], root / "sequence")
            has_audio = frame_set.audio is not None

            if needs_correction(options.speed, options.reverse):
                encoded = encode_video(
                    toolchain.ffmpeg,
                    pattern,
                    root / "encoded.mp4",
                    framerate=framerate,
                    audio_path=frame_set.audio,
                    crf=options.quality,
                )
                retimed = retime_video(
                    toolchain.ffmpeg,
                    encoded,
                    root / "retimed.mp4",
                    speed=options.speed,
                    reverse=options.reverse,
                    has_audio=has_audio,
                    framerate=framerate,
                    crf=options.quality,
                )
                # Frames dropped by cancellation shorten the expected result. Without
                # a probed duration, the frame count at the extraction rate stands in.
                source_duration = frame_set.duration or len(frame_set) / framerate
                target_duration = source_duration * len(frames) / len(frame_set)
                measured = get_video_info(toolchain.ffprobe, retimed).duration_seconds
                factor = duration_correction(target_duration, options.speed, measured)
                run.advance(JobState.TIMING_CORRECTED)
                correct_video(
                    toolchain.ffmpeg,
                    retimed,
                    destination,
                    factor=factor,
                    has_audio=has_audio,
                    framerate=framerate,
                    crf=options.quality,
                )
            else:
                run.advance(JobState.TIMING_CORRECTED)
                encode_video(
                    toolchain.ffmpeg,
                    pattern,
                    destination,
                    framerate=framerate,
                    audio_path=frame_set.audio,
                    crf=options.quality,
                )
            run.advance(JobState.REASSEMBLED)

    return destination


def upscale_one(
    source: PathLike,
    dest: Optional[str] = None,
    options: Optional[AnyOptions] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
    toolchain: Optional[Toolchain] = None,
) -> Path:
    """Dispatch to the single-item pipeline matching the options type."""
    if isinstance(options, VideoOptions):
        return upscale_video(source, dest, options, progress, cancel, toolchain)
    if isinstance(options, GifOptions):
        return upscale_gif(source, dest, options, progress, cancel, toolchain)
    return upscale_image(source, dest, options, cancel, toolchain)


# ── Folders ────────────────────────────────────────────────────────────────────


@_traced
def upscale_images(
    source_folder: PathLike,
    dest_folder: Optional[str] = None,
    options: Optional[UpscaleOptions] = None,
    progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
    toolchain: Optional[Toolchain] = None,
) -> list[Path]:
    """Upscale every image in a folder as one parallel frame batch.

    Sub-folders are walked when `options.recursive` is set; their relative
    layout is kept under the destination folder.
    """
    options = options or UpscaleOptions()
    validate_options(options)
    folder = _resolve_source(source_folder, folder=True)
    dest_root = Path(dest_folder).expanduser().resolve() if dest_folder else Path.cwd()

    files = list(itertools.islice(walk_files(folder, recursive=options.recursive), options.limit))
    frames = [
        Frame(
            index=index,
            source=path,
            dest=dest_root / path.parent.relative_to(folder) / f"{path.stem}{options.rename}{path.suffix}",
        )
        for index, path in enumerate(files)
    ]

    if options.scale != 1 and toolchain is None:
        toolchain = _toolchain_for(options)

    def work(frame: Frame) -> Path:
        frame.dest.parent.mkdir(parents=True, exist_ok=True)
        if options.scale == 1:
            shutil.copy2(frame.source, frame.dest)
            return frame.dest
        return upscale_frame(toolchain, frame.source, frame.dest, options, cancel)

    result = run_batch(
        frames,
        work,
        parallel=options.parallel_frames,
        limit=options.limit,
        progress=progress,
        cancel=cancel,
    )
    return [frame.dest for frame in result.outputs]


def _upscale_each(
    upscale: Callable[..., Path],
    source_folder: PathLike,
    dest_folder: Optional[str],
    options: AnyOptions,
    total_progress: Optional[ProgressCallback],
    progress: Optional[ProgressCallback],
    toolchain: Optional[Toolchain],
) -> list[Path]:
    folder = _resolve_source(source_folder, folder=True)
    entries = list(itertools.islice(walk_files(folder), options.limit))
    total = len(entries)
    results: list[Path] = []

    if total_progress is not None and total_progress(0, total):
        return results

    stop_requested = False

    def job_progress(completed: int, job_total: int) -> bool:
        nonlocal stop_requested
        stop = bool(progress(completed, job_total)) if progress is not None else False
        if stop:
            stop_requested = True
        return stop

    for position, entry in enumerate(entries):
        try:
            results.append(
                upscale(entry, dest_folder, options, progress=job_progress, toolchain=toolchain)
            )
        except ConfigurationError:
            raise
        except (UpscaleError, OSError) as exc:
            progress_write(f"Warning: skipping {entry.name}: {exc}")
            continue

        if total_progress is not None and total_progress(position + 1, total):
            break
        if stop_requested:
            break

    return results


@_traced
def upscale_gifs(
    source_folder: PathLike,
    dest_folder: Optional[str] = None,
    options: Optional[GifOptions] = None,
    total_progress: Optional[ProgressCallback] = None,
    progress: Optional[ProgressCallback] = None,
    toolchain: Optional[Toolchain] = None,
) -> list[Path]:
    """Upscale each GIF directly inside a folder, skipping ones that fail."""
    options = options or GifOptions()
    validate_options(options)
    if toolchain is None and options.scale != 1:
        toolchain = _toolchain_for(options)
    return _upscale_each(upscale_gif, source_folder, dest_folder, options, total_progress, progress, toolchain)


@_traced
def upscale_videos(
    source_folder: PathLike,
    dest_folder: Optional[str] = None,
    options: Optional[VideoOptions] = None,
    total_progress: Optional[ProgressCallback] = None,
    progress: Optional[ProgressCallback] = None,
    toolchain: Optional[Toolchain] = None,
) -> list[Path]:
    """Upscale each video directly inside a folder, skipping ones that fail."""
    options = options or VideoOptions()
    validate_options(options)
    if toolchain is None:
        toolchain = _toolchain_for(options, need_ffmpeg=True)
    return _upscale_each(upscale_video, source_folder, dest_folder, options, total_progress, progress, toolchain)


def upscale_many(
    source_folder: PathLike,
    dest_folder: Optional[str] = None,
    options: Optional[AnyOptions] = None,
    total_progress: Optional[ProgressCallback] = None,
    progress: Optional[ProgressCallback] = None,
) -> list[Path]:
    """Dispatch to the folder pipeline matching the options type."""
    if isinstance(options, VideoOptions):
        return upscale_videos(source_folder, dest_folder, options, total_progress, progress)
    if isinstance(options, GifOptions):
        return upscale_gifs(source_folder, dest_folder, options, total_progress, progress)
    return upscale_images(source_folder, dest_folder, options, progress)


# ── CLI ────────────────────────────────────────────────────────────────────────


def bar_callback(bar: tqdm) -> ProgressCallback:
    """Drive a tqdm bar from (completed, total) progress reports."""
    def update(completed: int, total: int) -> bool:
        if completed == 0:
            bar.reset(total=total)
        else:
            bar.update(completed - bar.n)
        return False

    return update


def run_command(args: argparse.Namespace, options: AnyOptions) -> int:
    print("\n" + "=" * 60)
    print("Frame Upscaler - waifu2x")
    print("=" * 60)
    print(f"Command:  {args.command}")
    print(f"Input:    {Path(args.source).expanduser().resolve()}")
    print(f"Output:   {args.output or Path.cwd()}")
    print(f"Scale:    {options.scale:g}x")
    print(f"Noise:    {options.noise if options.noise is not None else 'default'}")
    print(f"Parallel: {options.parallel_frames}")
    if isinstance(options, (GifOptions, VideoOptions)):
        print(f"Speed:    {options.speed:g}{' (reversed)' if options.reverse else ''}")
    print("=" * 60 + "\n")

    total_start = time.time()
    if args.command == "image":
        outputs = [
            upscale_image(
                args.source,
                args.output,
                options,
                cancel=CancelToken(poll_interval=args.poll_interval),
            )
        ]
    elif args.command in ("images", "gif", "video"):
        with tqdm(desc="Upscaling", unit="frame") as bar:
            if args.command == "images":
                outputs = upscale_images(args.source, args.output, options, progress=bar_callback(bar))
            else:
                outputs = [upscale_one(args.source, args.output, options, progress=bar_callback(bar))]
    else:
        with tqdm(desc="Files", unit="file", position=0) as files_bar, tqdm(
            desc="Frames", unit="frame", position=1, leave=False
        ) as frames_bar:
            outputs = upscale_many(
                args.source,
                args.output,
                options,
                total_progress=bar_callback(files_bar),
                progress=bar_callback(frames_bar),
            )

    print("=" * 60)
    print("Complete!")
    print(f"Total time: {format_time(time.time() - total_start)}")
    print(f"Outputs:    {len(outputs)}")
    for output in outputs:
        print(f"  {output}")
    print("=" * 60 + "\n")
    return 0


@_traced
def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        options = options_from_args(args)
        return run_command(args, options)
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def console_main() -> int:
    init_tracing()
    return main()


if __name__ == "__main__":
    raise SystemExit(console_main())
