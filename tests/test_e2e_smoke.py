"""End-to-end smoke tests using a real (tiny) video file.

These tests exercise the video pipeline with actual ffmpeg calls rather than
mocked subprocesses: probing, frame extraction, reassembly and the speed
correction pass. They run at scale 1 so the waifu2x binary is never needed.
"""

import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path

import containers
import upscale_media
from cli import VideoOptions


def _has_libx264() -> bool:
    ffmpeg = shutil.which("ffmpeg")
    if not ffmpeg or not shutil.which("ffprobe"):
        return False
    result = subprocess.run([ffmpeg, "-hide_banner", "-encoders"], capture_output=True, text=True)
    return result.returncode == 0 and "libx264" in result.stdout


HAS_FFMPEG = _has_libx264()


@unittest.skipUnless(HAS_FFMPEG, "requires ffmpeg and ffprobe with libx264")
class TestE2ESmoke(unittest.TestCase):
    """End-to-end smoke tests with a generated video file."""

    def setUp(self):
        self.temp = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp.cleanup)
        self.root = Path(self.temp.name)
        self.source = self.root / "tiny.mp4"
        subprocess.run(
            [
                "ffmpeg",
                "-f",
                "lavfi",
                "-i",
                "testsrc=duration=2:size=64x64:rate=10",
                "-pix_fmt",
                "yuv420p",
                "-c:v",
                "libx264",
                str(self.source),
                "-y",
                "-loglevel",
                "error",
            ],
            check=True,
        )

    def test_video_info_reads_real_metadata(self):
        info = containers.get_video_info("ffprobe", self.source)
        self.assertEqual(info.width, 64)
        self.assertEqual(info.height, 64)
        self.assertAlmostEqual(info.framerate, 10.0, places=1)
        self.assertAlmostEqual(info.duration_seconds, 2.0, delta=0.2)
        self.assertFalse(info.has_audio)

    def test_double_speed_halves_duration(self):
        result = upscale_media.upscale_video(
            self.source,
            str(self.root / "out"),
            VideoOptions(scale=1, speed=2),
        )

        info = containers.get_video_info("ffprobe", result)
        self.assertAlmostEqual(info.duration_seconds, 1.0, delta=0.5)
        self.assertFalse((self.root / "out" / "tinyFrames").exists())

    def test_normal_speed_keeps_duration(self):
        result = upscale_media.upscale_video(
            self.source,
            str(self.root / "out"),
            VideoOptions(scale=1),
        )

        info = containers.get_video_info("ffprobe", result)
        self.assertAlmostEqual(info.duration_seconds, 2.0, delta=0.5)


if __name__ == "__main__":
    unittest.main()
