import io
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from PIL import Image, ImageSequence

import upscale_media
from cli import GifOptions, UpscaleOptions, VideoOptions
from containers import VideoInfo
from toolchain import CancelToken, ExternalProcessFailure, Toolchain

WAIFU2X_ONLY = Toolchain(
    ffmpeg=None,
    ffprobe=None,
    waifu2x_binary=Path("/opt/waifu2x/waifu2x-converter-cpp"),
    model_dir=None,
)
FULL_TOOLCHAIN = Toolchain(
    ffmpeg="ffmpeg",
    ffprobe="ffprobe",
    waifu2x_binary=Path("/opt/waifu2x/waifu2x-converter-cpp"),
    model_dir=None,
)

COLORS = [(255, 0, 0), (0, 255, 0), (0, 0, 255), (255, 255, 0)]


def make_gif(path: Path, durations, size=(8, 6)) -> Path:
    frames = [Image.new("RGB", size, COLORS[index % len(COLORS)]) for index in range(len(durations))]
    frames[0].save(path, save_all=True, append_images=frames[1:], duration=list(durations), loop=0)
    return path


def read_gif(path: Path):
    colors = []
    durations = []
    with Image.open(path) as image:
        size = image.size
        for frame in ImageSequence.Iterator(image):
            durations.append(frame.info.get("duration"))
            colors.append(frame.convert("RGB").getpixel((0, 0)))
    return colors, durations, size


def fake_upscale_frame(toolchain, source, dest, options, cancel=None):
    """Stand-in for waifu2x that doubles the image size with Pillow."""
    with Image.open(source) as image:
        upscaled = image.resize((image.width * 2, image.height * 2))
    dest.parent.mkdir(parents=True, exist_ok=True)
    upscaled.save(dest)
    return dest


class TestUpscaleImage(unittest.TestCase):
    def test_scale_one_copies_without_resolving_binaries(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "cat.png"
            Image.new("RGB", (4, 4), (10, 20, 30)).save(source)

            with mock.patch("upscale_media.upscale_frame") as frame_mock, mock.patch(
                "upscale_media.resolve_toolchain"
            ) as resolve_mock:
                result = upscale_media.upscale_image(
                    source,
                    str(root / "out"),
                    UpscaleOptions(scale=1),
                )

            self.assertEqual(result, (root / "out" / "cat2x.png").resolve())
            self.assertEqual(result.read_bytes(), source.read_bytes())
            frame_mock.assert_not_called()
            resolve_mock.assert_not_called()

    def test_derived_name_uses_rename_suffix(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "cat.png"
            Image.new("RGB", (4, 4)).save(source)

            with mock.patch("upscale_media.upscale_frame", side_effect=fake_upscale_frame) as frame_mock:
                result = upscale_media.upscale_image(
                    source,
                    str(root),
                    UpscaleOptions(rename="_big"),
                    toolchain=WAIFU2X_ONLY,
                )

            self.assertEqual(result.name, "cat_big.png")
            with Image.open(result) as image:
                self.assertEqual(image.size, (8, 8))
            frame_mock.assert_called_once()

    def test_explicit_file_destination(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "cat.png"
            Image.new("RGB", (4, 4)).save(source)

            result = upscale_media.upscale_image(
                source,
                str(root / "nested" / "final.png"),
                UpscaleOptions(scale=1),
            )

            self.assertEqual(result, (root / "nested" / "final.png").resolve())
            self.assertTrue(result.exists())


class TestUpscaleGif(unittest.TestCase):
    def test_gif_end_to_end_with_parallel_frames(self):
        calls = []
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = make_gif(root / "anim.gif", [100, 120, 140, 160])
            out_dir = root / "out"

            with mock.patch("upscale_media.upscale_frame", side_effect=fake_upscale_frame):
                result = upscale_media.upscale_gif(
                    source,
                    str(out_dir),
                    GifOptions(parallel_frames=3),
                    progress=lambda completed, total: calls.append((completed, total)),
                    toolchain=WAIFU2X_ONLY,
                )

            colors, durations, size = read_gif(result)
            self.assertEqual(result, (out_dir / "anim2x.gif").resolve())
            self.assertEqual(size, (16, 12))
            self.assertEqual(colors, COLORS)
            self.assertEqual(durations, [100, 120, 140, 160])
            self.assertFalse((out_dir / "animFrames").exists())

        self.assertEqual(calls, [(completed, 4) for completed in range(5)])

    def test_reversed_slow_motion_gif(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = make_gif(root / "anim.gif", [100, 200, 300])

            result = upscale_media.upscale_gif(
                source,
                str(root / "out"),
                GifOptions(scale=1, speed=0.5, reverse=True),
            )

            colors, durations, _ = read_gif(result)

        self.assertEqual(durations, [600, 400, 200])
        self.assertEqual(colors, list(reversed(COLORS[:3])))

    def test_failure_still_removes_workspace(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = make_gif(root / "anim.gif", [100, 100])
            out_dir = root / "out"

            failing = mock.Mock(side_effect=ExternalProcessFailure("waifu2x", "exit status 1"))
            with mock.patch("upscale_media.upscale_frame", failing):
                with self.assertRaises(ExternalProcessFailure):
                    upscale_media.upscale_gif(
                        source,
                        str(out_dir),
                        GifOptions(),
                        toolchain=WAIFU2X_ONLY,
                    )

            self.assertFalse((out_dir / "animFrames").exists())
            self.assertEqual(failing.call_count, 2)


class TestFolderBatches(unittest.TestCase):
    def test_images_folder_preserves_subfolders(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "in"
            (source / "sub").mkdir(parents=True)
            Image.new("RGB", (4, 4)).save(source / "a.png")
            Image.new("RGB", (4, 4)).save(source / "sub" / "b.png")
            out_dir = root / "out"

            with mock.patch("upscale_media.upscale_frame", side_effect=fake_upscale_frame):
                results = upscale_media.upscale_images(
                    source,
                    str(out_dir),
                    UpscaleOptions(recursive=True, parallel_frames=2),
                    toolchain=WAIFU2X_ONLY,
                )

            self.assertEqual(
                [path.relative_to(out_dir.resolve()).as_posix() for path in results],
                ["a2x.png", "sub/b2x.png"],
            )
            self.assertTrue(all(path.exists() for path in results))

    def test_images_limit_caps_the_batch(self):
        calls = []
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "in"
            source.mkdir()
            for index in range(5):
                Image.new("RGB", (2, 2)).save(source / f"img{index}.png")

            results = upscale_media.upscale_images(
                source,
                str(root / "out"),
                UpscaleOptions(scale=1, limit=2),
                progress=lambda completed, total: calls.append((completed, total)),
            )

        self.assertEqual([path.name for path in results], ["img02x.png", "img12x.png"])
        self.assertEqual(calls, [(0, 2), (1, 2), (2, 2)])

    def test_gifs_skip_broken_files(self):
        totals = []
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "in"
            source.mkdir()
            make_gif(source / "1.gif", [100, 100])
            (source / "2.gif").write_text("not a gif")
            make_gif(source / "3.gif", [100, 100])

            with mock.patch("sys.stdout", new_callable=io.StringIO):
                results = upscale_media.upscale_gifs(
                    source,
                    str(root / "out"),
                    GifOptions(scale=1),
                    total_progress=lambda completed, total: totals.append((completed, total)),
                )

            self.assertEqual([path.name for path in results], ["12x.gif", "32x.gif"])
            self.assertEqual(sorted(path.name for path in (root / "out").iterdir()), ["12x.gif", "32x.gif"])

        self.assertEqual(totals, [(0, 3), (1, 3), (3, 3)])

    def test_gifs_honour_limit_and_stop(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "in"
            source.mkdir()
            for index in range(3):
                make_gif(source / f"{index}.gif", [100])

            limited = upscale_media.upscale_gifs(
                source,
                str(root / "limited"),
                GifOptions(scale=1, limit=1),
            )
            stopped = upscale_media.upscale_gifs(
                source,
                str(root / "stopped"),
                GifOptions(scale=1),
                total_progress=lambda completed, total: completed == 2,
            )

        self.assertEqual(len(limited), 1)
        self.assertEqual(len(stopped), 2)

    def test_videos_skip_failures_and_stop_on_inner_request(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "in"
            source.mkdir()
            for name in ("a.mp4", "b.mp4", "c.mp4"):
                (source / name).touch()

            seen = []

            def fake_video(entry, dest, options, progress=None, toolchain=None):
                seen.append(entry.name)
                if entry.name == "a.mp4":
                    raise ExternalProcessFailure("ffmpeg", "exit status 1")
                progress(0, 10)
                progress(1, 10)
                return Path(dest) / entry.name

            with mock.patch("upscale_media.upscale_video", side_effect=fake_video), mock.patch(
                "sys.stdout", new_callable=io.StringIO
            ):
                results = upscale_media.upscale_videos(
                    source,
                    str(root / "out"),
                    VideoOptions(scale=1),
                    progress=lambda completed, total: completed == 1,
                    toolchain=FULL_TOOLCHAIN,
                )

        self.assertEqual(seen, ["a.mp4", "b.mp4"])
        self.assertEqual([path.name for path in results], ["b.mp4"])

    def test_configuration_errors_abort_the_batch(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir)
            (source / "a.mp4").touch()
            (source / "b.mp4").touch()

            with mock.patch(
                "upscale_media.upscale_video",
                side_effect=upscale_media.ConfigurationError("bad option"),
            ) as video_mock:
                with self.assertRaises(upscale_media.ConfigurationError):
                    upscale_media.upscale_videos(source, None, VideoOptions(), toolchain=FULL_TOOLCHAIN)

        self.assertEqual(video_mock.call_count, 1)


class TestUpscaleVideo(unittest.TestCase):
    def run_video(self, options, infos, progress=None):
        self.temp = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp.cleanup)
        root = Path(self.temp.name)
        source = root / "clip.mp4"
        source.touch()

        def fake_extract(ffmpeg, src, frames_dir, *, framerate):
            paths = []
            for number in range(1, 5):
                path = frames_dir / f"frame{number}.png"
                Image.new("RGB", (4, 4)).save(path)
                paths.append(path)
            return paths

        def passthrough_encode(ffmpeg, src, dest, **kwargs):
            return dest

        patches = {
            "get_video_info": mock.patch("upscale_media.get_video_info", side_effect=infos),
            "extract_video_frames": mock.patch("upscale_media.extract_video_frames", side_effect=fake_extract),
            "extract_audio": mock.patch("upscale_media.extract_audio", side_effect=lambda ffmpeg, src, workspace_root, has_audio: workspace_root / "audio_track.mka"),
            "upscale_frame": mock.patch("upscale_media.upscale_frame", side_effect=fake_upscale_frame),
            "encode_video": mock.patch("upscale_media.encode_video", side_effect=passthrough_encode),
            "retime_video": mock.patch("upscale_media.retime_video", side_effect=passthrough_encode),
            "correct_video": mock.patch("upscale_media.correct_video", side_effect=passthrough_encode),
        }
        mocks = {name: patcher.start() for name, patcher in patches.items()}
        for patcher in patches.values():
            self.addCleanup(patcher.stop)

        result = upscale_media.upscale_video(
            source,
            str(root / "out"),
            options,
            progress=progress,
            toolchain=FULL_TOOLCHAIN,
        )
        return root, result, mocks

    def test_speed_change_applies_duration_correction(self):
        infos = [
            VideoInfo(framerate=24.0, width=4, height=4, duration_seconds=10.0, has_audio=True),
            VideoInfo(framerate=24.0, width=8, height=8, duration_seconds=4.8, has_audio=True),
        ]
        root, result, mocks = self.run_video(VideoOptions(speed=2, parallel_frames=2), infos)

        self.assertEqual(result, (root / "out" / "clip2x.mp4").resolve())
        self.assertEqual(mocks["upscale_frame"].call_count, 4)
        retime_kwargs = mocks["retime_video"].call_args.kwargs
        self.assertEqual(retime_kwargs["speed"], 2)
        self.assertTrue(retime_kwargs["has_audio"])
        correct_kwargs = mocks["correct_video"].call_args.kwargs
        self.assertAlmostEqual(correct_kwargs["factor"], 10.0 / 2 / 4.8)
        self.assertEqual(mocks["correct_video"].call_args.args[2], result)
        self.assertFalse((root / "out" / "clipFrames").exists())

    def test_normal_speed_encodes_once(self):
        infos = [VideoInfo(framerate=24.0, width=4, height=4, duration_seconds=2.0, has_audio=False)]
        root, result, mocks = self.run_video(VideoOptions(), infos)

        mocks["retime_video"].assert_not_called()
        mocks["correct_video"].assert_not_called()
        encode_call = mocks["encode_video"].call_args
        self.assertEqual(encode_call.args[2], result)
        self.assertEqual(encode_call.kwargs["framerate"], 24.0)
        self.assertEqual(encode_call.kwargs["crf"], 16)

    def test_cancellation_shortens_target_duration(self):
        infos = [
            VideoInfo(framerate=24.0, width=4, height=4, duration_seconds=10.0, has_audio=True),
            VideoInfo(framerate=24.0, width=8, height=8, duration_seconds=2.0, has_audio=True),
        ]
        _, _, mocks = self.run_video(
            VideoOptions(speed=2, parallel_frames=2),
            infos,
            progress=lambda completed, total: completed == 2,
        )

        self.assertEqual(mocks["upscale_frame"].call_count, 2)
        # Half the frames survive, so the target is 5s at double speed.
        self.assertAlmostEqual(mocks["correct_video"].call_args.kwargs["factor"], 5.0 / 2 / 2.0)

    def test_missing_duration_falls_back_to_frame_count(self):
        infos = [
            VideoInfo(framerate=2.0, width=4, height=4, duration_seconds=0.0, has_audio=False),
            VideoInfo(framerate=2.0, width=8, height=8, duration_seconds=0.5, has_audio=False),
        ]
        _, _, mocks = self.run_video(VideoOptions(speed=2), infos)

        # Four frames at 2 fps stand in for a 2s source.
        factor = mocks["correct_video"].call_args.kwargs["factor"]
        self.assertGreater(factor, 0)
        self.assertAlmostEqual(factor, 2.0 / 2 / 0.5)


class TestJobTracking(unittest.TestCase):
    def test_failure_records_state_and_reraises(self):
        job = upscale_media.Job(source=Path("anim.gif"), dest=Path("anim2x.gif"), options=GifOptions())
        with mock.patch("upscale_media.progress_write") as write_mock:
            with self.assertRaises(RuntimeError):
                with upscale_media.track_job(job) as run:
                    run.advance(upscale_media.JobState.WORKSPACE_ACQUIRED)
                    raise RuntimeError("boom")

        self.assertEqual(run.state, upscale_media.JobState.RELEASED)
        self.assertEqual(
            run.history,
            [
                upscale_media.JobState.PENDING,
                upscale_media.JobState.WORKSPACE_ACQUIRED,
                upscale_media.JobState.FAILED,
                upscale_media.JobState.RELEASED,
            ],
        )
        self.assertIn("workspace_acquired", write_mock.call_args.args[0])

    def test_success_ends_released(self):
        job = upscale_media.Job(source=Path("a.png"), dest=Path("a2x.png"), options=UpscaleOptions())
        with upscale_media.track_job(job) as run:
            run.advance(upscale_media.JobState.REASSEMBLED)
        self.assertEqual(run.state, upscale_media.JobState.RELEASED)


class TestCommandLine(unittest.TestCase):
    def test_main_copies_image_at_scale_one(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            source = root / "cat.png"
            Image.new("RGB", (4, 4)).save(source)

            with mock.patch("sys.stdout", new_callable=io.StringIO):
                rc = upscale_media.main(["image", str(source), "-s", "1", "-o", str(root / "out")])

            self.assertEqual(rc, 0)
            self.assertTrue((root / "out" / "cat2x.png").exists())

    def test_main_reports_missing_input(self):
        with mock.patch("sys.stderr", new_callable=io.StringIO) as err:
            rc = upscale_media.main(["image", "/definitely/not/here.png", "-s", "1"])
        self.assertEqual(rc, 1)
        self.assertIn("Input file not found", err.getvalue())

    def test_main_rejects_invalid_parallelism(self):
        with mock.patch("sys.stderr", new_callable=io.StringIO) as err:
            rc = upscale_media.main(["images", ".", "--parallel-frames", "0"])
        self.assertEqual(rc, 1)
        self.assertIn("Parallel frames", err.getvalue())

    def test_bar_callback_tracks_progress(self):
        bar = mock.Mock(n=2)
        update = upscale_media.bar_callback(bar)
        self.assertFalse(update(0, 10))
        bar.reset.assert_called_once_with(total=10)
        update(5, 10)
        bar.update.assert_called_once_with(3)

    def test_traced_decorator_preserves_function_name(self):
        @upscale_media._traced
        def example_function():
            pass

        self.assertEqual(example_function.__name__, "example_function")


class TestDispatch(unittest.TestCase):
    def test_upscale_one_routes_by_options_type(self):
        with mock.patch("upscale_media.upscale_video") as video_mock, mock.patch(
            "upscale_media.upscale_gif"
        ) as gif_mock, mock.patch("upscale_media.upscale_image") as image_mock:
            upscale_media.upscale_one("clip.mp4", options=VideoOptions())
            upscale_media.upscale_one("anim.gif", options=GifOptions())
            upscale_media.upscale_one("cat.png", options=UpscaleOptions())

        video_mock.assert_called_once()
        gif_mock.assert_called_once()
        image_mock.assert_called_once()

    def test_upscale_many_routes_images_to_batch(self):
        with mock.patch("upscale_media.upscale_images") as images_mock:
            upscale_media.upscale_many("in", "out", UpscaleOptions())
        images_mock.assert_called_once_with("in", "out", UpscaleOptions(), None)


if __name__ == "__main__":
    unittest.main()
