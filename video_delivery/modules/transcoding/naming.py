"""Rendition naming.

A rendition's object key is a pure function of its source key and quality,
so existence can always be checked against the store without a job table.

Canonical form: ``<stem>_<quality><ext>``, e.g. ``lessons/intro.mp4`` at 480p
is ``lessons/intro_480p.mp4``. The source extension is kept as is, empty
included, so decoding is exact. Older uploads used a ``__<quality>__`` infix
(``lessons/intro__480p__.mp4``); those decode to the same source.
"""

import posixpath
import re
from dataclasses import dataclass
from typing import Optional

from video_delivery.modules.transcoding.models import QUALITY_NAME_RE

_CANONICAL_SUFFIX_RE = re.compile(r"^(?P<stem>.+)_(?P<quality>\d+p)$")
_LEGACY_TRAILING_RE = re.compile(r"^(?P<stem>.+)__(?P<quality>\d+p)__$")
_LEGACY_INFIX_RE = re.compile(r"__(?P<quality>\d+p)__")


@dataclass(frozen=True)
class ArtifactKey:
    """Structured rendition identity: a source key plus an optional quality.

    ``quality`` is None for the source itself.
    """
    base_id: str
    quality: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.base_id:
            raise ValueError("base_id must not be empty")
        if self.quality is not None and not QUALITY_NAME_RE.match(self.quality):
            raise ValueError(f"Invalid quality name: {self.quality!r}")

    @property
    def is_rendition(self) -> bool:
        return self.quality is not None

    def encode(self) -> str:
        """Object key for this artifact."""
        if self.quality is None:
            return self.base_id
        stem, ext = posixpath.splitext(self.base_id)
        return f"{stem}_{self.quality}{ext}"

    @classmethod
    def decode(cls, object_id: str) -> "ArtifactKey":
        """Parse any object key, canonical or legacy, into its source and quality."""
        stem, ext = posixpath.splitext(object_id)

        match = _CANONICAL_SUFFIX_RE.match(stem)
        if match:
            return cls(match.group("stem") + ext, match.group("quality"))

        match = _LEGACY_TRAILING_RE.match(stem)
        if match:
            return cls(match.group("stem") + ext, match.group("quality"))

        match = _LEGACY_INFIX_RE.search(stem)
        if match and match.start() > 0:
            base_stem = stem[: match.start()] + "__" + stem[match.end():]
            return cls(base_stem + ext, match.group("quality"))

        return cls(object_id)


def base_source_id(any_id: str) -> str:
    """Strip any quality marker, returning the source object key."""
    return ArtifactKey.decode(any_id).base_id


def derive_artifact_name(source_id: str, quality: str) -> str:
    """Object key of ``source_id``'s rendition at ``quality``.

    Deriving from an id that is already a rendition re-targets it rather than
    nesting suffixes: ``intro_720p.mp4`` at 480p is ``intro_480p.mp4``.
    """
    return ArtifactKey(base_source_id(source_id), quality).encode()


def rendition_listing_prefix(source_id: str) -> str:
    """Key prefix shared by every rendition of ``source_id``, canonical or legacy.

    Listings under this prefix can also hold unrelated keys that merely share
    the stem; filter them with ``ArtifactKey.decode``.
    """
    stem, _ = posixpath.splitext(base_source_id(source_id))
    return stem
