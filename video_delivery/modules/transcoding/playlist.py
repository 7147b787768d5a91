"""HLS master playlist over the progressive MP4 renditions.

Each variant entry points at one rendition, so HLS-capable players can
switch quality by bandwidth without a separate segmenting step.
"""

from typing import Callable, Iterable

from video_delivery.modules.transcoding.models import QualityProfile

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
PLAYLIST_CACHE_CONTROL = "public, max-age=300"


def build_master_playlist(
    profiles: Iterable[QualityProfile],
    uri_for: Callable[[QualityProfile], str],
) -> str:
    """Render an ``#EXTM3U`` master playlist.

    Args:
        profiles: Qualities that currently have a rendition, highest first
        uri_for: Builds the variant URI for a profile

    Returns:
        Playlist text, newline-terminated
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for profile in profiles:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={profile.bandwidth},"
            f"RESOLUTION={profile.width}x{profile.height},"
            f'NAME="{profile.name}"'
        )
        lines.append(uri_for(profile))
    return "\n".join(lines) + "\n"
