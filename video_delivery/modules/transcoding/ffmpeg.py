"""FFmpeg encoder.

One invocation turns a local source file into one local rendition file.
The encoder never talks to the object store and never retries.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Optional

from video_delivery.core.config import settings
from video_delivery.core.exceptions import EncodeError
from video_delivery.core.metrics import ENCODE_DURATION_SECONDS
from video_delivery.modules.transcoding.models import QualityProfile

logger = logging.getLogger(__name__)

# ffmpeg prints its whole banner and progress to stderr; keep the tail
STDERR_TAIL_CHARS = 4000


@dataclass
class EncodeOutput:
    """Result of a successful encode."""
    output_path: str
    quality: str
    file_size: int
    duration_seconds: float


class FFmpegEncoder:
    """Runs ffmpeg with the H.264/AAC settings used for every rendition."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        preset: Optional[str] = None,
        threads: Optional[int] = None,
        audio_bitrate: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """Initialize encoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            preset: x264 preset
            threads: Cap on encoder threads per process
            audio_bitrate: AAC bitrate in ffmpeg notation
            timeout_seconds: Wall-clock limit for one encode
        """
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.preset = preset or settings.FFMPEG_PRESET
        self.threads = threads or settings.FFMPEG_THREADS
        self.audio_bitrate = audio_bitrate or settings.AUDIO_BITRATE
        self.timeout_seconds = timeout_seconds or settings.ENCODE_TIMEOUT_SECONDS

    def build_command(self, input_path: str, profile: QualityProfile, output_path: str) -> list[str]:
        """Build the ffmpeg argument list for one rendition.

        Args:
            input_path: Local source file
            profile: Target quality profile
            output_path: Local file to write

        Returns:
            FFmpeg command as list of arguments
        """
        return [
            self.ffmpeg_path,
            "-i", input_path,
            # Video: constant quality, capped bitrate
            "-c:v", "libx264",
            "-preset", self.preset,
            "-crf", str(profile.crf),
            "-maxrate", profile.bitrate,
            "-bufsize", profile.bufsize,
            "-vf", f"scale={profile.width}:{profile.height}",
            # Audio
            "-c:a", "aac",
            "-b:a", self.audio_bitrate,
            "-threads", str(self.threads),
            # Moov atom first so browsers can start playback before the download ends
            "-movflags", "+faststart",
            "-y",
            output_path,
        ]

    def encode(self, input_path: str, profile: QualityProfile, output_path: str) -> EncodeOutput:
        """Encode ``input_path`` at ``profile`` into ``output_path``.

        Blocking; callers on an event loop run it in a worker thread.

        Raises:
            EncodeError: on non-zero exit, timeout, missing binary or empty output
        """
        cmd = self.build_command(input_path, profile, output_path)
        started = time.perf_counter()
        logger.info(
            "Encoding rendition",
            extra={"quality": profile.name, "input_path": input_path, "output_path": output_path},
        )

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            self._observe(profile, started, "timeout")
            self._remove_partial(output_path)
            raise EncodeError(
                f"ffmpeg timed out after {self.timeout_seconds}s for {profile.name}",
                quality=profile.name,
                stderr=self._tail(e.stderr),
            ) from e
        except OSError as e:
            self._observe(profile, started, "error")
            raise EncodeError(
                f"Could not start ffmpeg at {self.ffmpeg_path!r}: {e}",
                quality=profile.name,
            ) from e

        if result.returncode != 0:
            self._observe(profile, started, "error")
            self._remove_partial(output_path)
            raise EncodeError(
                f"ffmpeg exited with code {result.returncode} for {profile.name}",
                quality=profile.name,
                stderr=self._tail(result.stderr),
                returncode=result.returncode,
            )

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            self._observe(profile, started, "error")
            raise EncodeError(
                f"ffmpeg produced no output for {profile.name}",
                quality=profile.name,
                stderr=self._tail(result.stderr),
                returncode=result.returncode,
            )

        duration = self._observe(profile, started, "success")
        return EncodeOutput(
            output_path=output_path,
            quality=profile.name,
            file_size=os.path.getsize(output_path),
            duration_seconds=duration,
        )

    @staticmethod
    def _observe(profile: QualityProfile, started: float, outcome: str) -> float:
        duration = time.perf_counter() - started
        ENCODE_DURATION_SECONDS.labels(quality=profile.name, outcome=outcome).observe(duration)
        return duration

    @staticmethod
    def _remove_partial(output_path: str) -> None:
        if os.path.exists(output_path):
            os.remove(output_path)

    @staticmethod
    def _tail(stderr) -> str:
        if not stderr:
            return ""
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        return stderr[-STDERR_TAIL_CHARS:]
