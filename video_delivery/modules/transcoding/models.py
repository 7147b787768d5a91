"""Quality profiles and compression job state for the transcoding module."""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

QUALITY_NAME_RE = re.compile(r"^\d+p$")


class CompressionStatus(str, Enum):
    """Lifecycle of a source's transcoding job.

    pending -> compressing -> completed | failed
    """
    PENDING = "pending"
    COMPRESSING = "compressing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CompressionStatus.COMPLETED, CompressionStatus.FAILED)


@dataclass(frozen=True)
class QualityProfile:
    """A named rendition target."""
    name: str
    width: int
    height: int
    bitrate_kbps: int
    crf: int

    @property
    def bitrate(self) -> str:
        """Bitrate in ffmpeg notation, e.g. ``1000k``."""
        return f"{self.bitrate_kbps}k"

    @property
    def bufsize(self) -> str:
        """Rate-control buffer, twice the target bitrate."""
        return f"{self.bitrate_kbps * 2}k"

    @property
    def bandwidth(self) -> int:
        """Bitrate in bits per second, as HLS playlists expect."""
        return self.bitrate_kbps * 1000


# Ordered highest to lowest; fallback order after the default follows this order
QUALITY_PROFILES: dict[str, QualityProfile] = {
    "720p": QualityProfile(name="720p", width=1280, height=720, bitrate_kbps=2500, crf=23),
    "480p": QualityProfile(name="480p", width=854, height=480, bitrate_kbps=1000, crf=25),
    "360p": QualityProfile(name="360p", width=640, height=360, bitrate_kbps=500, crf=28),
}

DEFAULT_QUALITY = "480p"


class QualityCatalog:
    """The active set of quality profiles, fixed at process start.

    Configuration can narrow the built-in profiles but never invent new ones.
    """

    def __init__(self, names: Optional[Iterable[str]] = None, default: str = DEFAULT_QUALITY):
        selected = list(names) if names is not None else list(QUALITY_PROFILES)
        unknown = [n for n in selected if n not in QUALITY_PROFILES]
        if unknown:
            raise ValueError(f"Unknown quality profiles: {', '.join(unknown)}")
        # Keep the built-in order regardless of configuration order
        self._profiles = [p for name, p in QUALITY_PROFILES.items() if name in selected]
        if not self._profiles:
            raise ValueError("At least one quality profile is required")
        if default not in self.names:
            raise ValueError(f"Default quality {default!r} is not in the catalog")
        self.default = default

    @property
    def profiles(self) -> list[QualityProfile]:
        return list(self._profiles)

    @property
    def names(self) -> list[str]:
        return [p.name for p in self._profiles]

    def get(self, name: str) -> Optional[QualityProfile]:
        for profile in self._profiles:
            if profile.name == name:
                return profile
        return None

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def fallback_order(self) -> list[str]:
        """Default quality first, then the rest in catalog order."""
        return [self.default] + [n for n in self.names if n != self.default]
