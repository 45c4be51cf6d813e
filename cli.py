"""CLI: argument parsing, job options, destination paths and validation."""

from __future__ import annotations

import argparse
import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

from toolchain import DEFAULT_POLL_INTERVAL, ConfigurationError

# ── Constants ──────────────────────────────────────────────────────────────────

NOISE_LEVELS = (0, 1, 2, 3)
UPSCALE_MODES = ("noise", "scale", "noise-scale")
DEFAULT_RENAME = "2x"
DEFAULT_GIF_QUALITY = 10
DEFAULT_VIDEO_CRF = 16
COMMAND_HELP = {
    "image": "Upscale one image",
    "images": "Upscale every image in a folder",
    "gif": "Upscale one animated GIF",
    "gifs": "Upscale every GIF in a folder",
    "video": "Upscale one video",
    "videos": "Upscale every video in a folder",
}
COMMANDS = tuple(COMMAND_HELP)


# ── Options ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UpscaleOptions:
    noise: Optional[int] = None
    scale: float = 2.0
    mode: Optional[str] = None
    block_size: Optional[int] = None
    png_compression: Optional[int] = None
    jpg_webp_quality: Optional[int] = None
    disable_gpu: bool = False
    force_opencl: bool = False
    processor: Optional[int] = None
    threads: Optional[int] = None
    model_dir: Optional[str] = None
    recursive: bool = False
    rename: str = DEFAULT_RENAME
    waifu2x_path: Optional[str] = None
    limit: Optional[int] = None
    parallel_frames: int = 1
    timeout: Optional[float] = None


@dataclass(frozen=True)
class GifOptions(UpscaleOptions):
    quality: int = DEFAULT_GIF_QUALITY
    speed: float = 1.0
    reverse: bool = False
    cumulative: bool = False


@dataclass(frozen=True)
class VideoOptions(UpscaleOptions):
    framerate: Optional[float] = None
    quality: int = DEFAULT_VIDEO_CRF
    speed: float = 1.0
    reverse: bool = False
    ffmpeg_path: Optional[str] = None


AnyOptions = Union[UpscaleOptions, GifOptions, VideoOptions]


# ── Functions ──────────────────────────────────────────────────────────────────


def split_destination(
    source: Path,
    dest: Optional[str],
    rename: str,
) -> tuple[Path, str]:
    """Split `dest` into (folder, file name).

    A destination whose last component contains a dot names the output file;
    anything else is a folder and the file name is derived from the source.
    """
    name: Optional[str] = None
    if not dest:
        folder = Path(".")
    else:
        dest_path = Path(dest)
        if dest_path.name not in ("", ".", "..") and "." in dest_path.name:
            name = dest_path.name
            folder = dest_path.parent
        else:
            folder = dest_path

    if name is None:
        name = f"{source.stem}{rename}{source.suffix}"
    return folder.expanduser().resolve(), name


def resolve_destination(
    source: Path,
    dest: Optional[str] = None,
    rename: str = DEFAULT_RENAME,
) -> Path:
    folder, name = split_destination(source, dest, rename)
    return folder / name


def validate_options(options: AnyOptions) -> None:
    if options.noise is not None and options.noise not in NOISE_LEVELS:
        raise ConfigurationError(f"Noise level must be one of {NOISE_LEVELS}.")
    if options.scale <= 0:
        raise ConfigurationError("Scale must be > 0.")
    if options.mode is not None and options.mode not in UPSCALE_MODES:
        raise ConfigurationError(f"Mode must be one of {UPSCALE_MODES}.")
    if options.block_size is not None and options.block_size <= 0:
        raise ConfigurationError("Block size must be > 0.")
    if options.png_compression is not None and not (0 <= options.png_compression <= 9):
        raise ConfigurationError("PNG compression must be between 0 and 9.")
    if options.jpg_webp_quality is not None and not (0 <= options.jpg_webp_quality <= 101):
        raise ConfigurationError("JPEG/WebP quality must be between 0 and 101.")
    if options.processor is not None and options.processor < 0:
        raise ConfigurationError("Processor index must be >= 0.")
    if options.threads is not None and options.threads <= 0:
        raise ConfigurationError("Thread count must be > 0.")
    if options.limit is not None and options.limit <= 0:
        raise ConfigurationError("Limit must be > 0.")
    if options.parallel_frames < 1:
        raise ConfigurationError("Parallel frames must be >= 1.")
    if options.timeout is not None and options.timeout <= 0:
        raise ConfigurationError("Timeout must be > 0.")

    if isinstance(options, (GifOptions, VideoOptions)):
        if options.speed <= 0:
            raise ConfigurationError("Speed must be > 0.")
    if isinstance(options, GifOptions) and options.quality < 1:
        raise ConfigurationError("GIF quality must be >= 1.")
    if isinstance(options, VideoOptions):
        if not (0 <= options.quality <= 51):
            raise ConfigurationError("Video quality (CRF) must be between 0 and 51.")
        if options.framerate is not None and options.framerate <= 0:
            raise ConfigurationError("Framerate must be > 0.")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("source", type=str, help="Input file or folder")
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Output file or folder (default: current folder)",
    )
    parser.add_argument(
        "-n",
        "--noise",
        type=int,
        default=None,
        choices=NOISE_LEVELS,
        help="Noise reduction level",
    )
    parser.add_argument("-s", "--scale", type=float, default=2.0, help="Scale ratio")
    parser.add_argument(
        "-m",
        "--mode",
        type=str,
        default=None,
        choices=UPSCALE_MODES,
        help="waifu2x conversion mode",
    )
    parser.add_argument("--block-size", type=int, default=None, help="waifu2x block size")
    parser.add_argument(
        "--png-compression",
        type=int,
        default=None,
        help="PNG compression level (0-9)",
    )
    parser.add_argument(
        "--jpg-webp-quality",
        type=int,
        default=None,
        help="JPEG/WebP output quality (0-101)",
    )
    parser.add_argument("--disable-gpu", action="store_true", help="Run on the CPU only")
    parser.add_argument("--force-opencl", action="store_true", help="Force the OpenCL backend")
    parser.add_argument("-p", "--processor", type=int, default=None, help="Processor index")
    parser.add_argument("-j", "--threads", type=int, default=None, help="waifu2x thread count")
    parser.add_argument("--model-dir", type=str, default=None, help="waifu2x model directory")
    parser.add_argument(
        "--waifu2x-path",
        type=str,
        default=None,
        help="Custom waifu2x-converter-cpp binary or folder",
    )
    parser.add_argument(
        "--parallel-frames",
        type=int,
        default=1,
        help="Frames upscaled concurrently",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of items to process (default: all)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Per-process timeout in seconds (default: wait forever)",
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upscale images, GIFs and videos frame by frame with waifu2x",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for command in COMMANDS:
        sub = subparsers.add_parser(
            command,
            formatter_class=argparse.ArgumentDefaultsHelpFormatter,
            help=COMMAND_HELP[command],
        )
        _add_common_arguments(sub)

        if command in ("image", "images"):
            sub.add_argument(
                "--rename",
                type=str,
                default=DEFAULT_RENAME,
                help="Suffix appended to derived output names",
            )
        if command == "image":
            sub.add_argument(
                "--poll-interval",
                type=float,
                default=DEFAULT_POLL_INTERVAL,
                help="Seconds between cancellation checks",
            )
        if command == "images":
            sub.add_argument("-r", "--recursive", action="store_true", help="Descend into sub-folders")
        if command in ("gif", "gifs", "video", "videos"):
            sub.add_argument("--speed", type=float, default=1.0, help="Playback speed multiplier")
            sub.add_argument("--reverse", action="store_true", help="Reverse playback")
        if command in ("gif", "gifs"):
            sub.add_argument(
                "-q",
                "--quality",
                type=int,
                default=DEFAULT_GIF_QUALITY,
                help="GIF palette quality (lower is better)",
            )
            sub.add_argument(
                "--cumulative",
                action="store_true",
                help="Composite each frame over the previous one",
            )
        if command in ("video", "videos"):
            sub.add_argument(
                "-q",
                "--quality",
                type=int,
                default=DEFAULT_VIDEO_CRF,
                help="x264 CRF (0-51)",
            )
            sub.add_argument(
                "--framerate",
                type=float,
                default=None,
                help="Extraction framerate (default: source framerate)",
            )
            sub.add_argument("--ffmpeg-path", type=str, default=None, help="Custom ffmpeg binary")

    return parser.parse_args(argv)


def options_from_args(args: argparse.Namespace) -> AnyOptions:
    """Build the frozen option dataclass matching the parsed sub-command."""
    if args.command in ("gif", "gifs"):
        options_cls: type = GifOptions
    elif args.command in ("video", "videos"):
        options_cls = VideoOptions
    else:
        options_cls = UpscaleOptions

    values = vars(args)
    kwargs = {
        field.name: values[field.name]
        for field in dataclasses.fields(options_cls)
        if field.name in values
    }
    options = options_cls(**kwargs)
    validate_options(options)
    return options
