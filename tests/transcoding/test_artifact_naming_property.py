"""Property-based tests for rendition naming.

**Feature: video-delivery, Property 1: Naming determinism and inverse**
"""

import pytest
from hypothesis import given, settings, strategies as st

from video_delivery.modules.transcoding.models import QUALITY_PROFILES
from video_delivery.modules.transcoding.naming import (
    ArtifactKey,
    base_source_id,
    derive_artifact_name,
    rendition_listing_prefix,
)

quality_strategy = st.sampled_from(list(QUALITY_PROFILES))

_segment = st.text(
    alphabet=st.characters(categories=("Ll", "Lu", "Nd"), include_characters="-."),
    min_size=1,
    max_size=20,
).filter(lambda s: not s.startswith(".") and ".." not in s)

# Object keys that are not themselves renditions
source_id_strategy = st.builds(
    lambda dirs, name, ext: "/".join(dirs + [name]) + ext,
    st.lists(_segment, max_size=3),
    _segment,
    st.sampled_from([".mp4", ".mov", ".webm", ""]),
).filter(lambda key: base_source_id(key) == key)


class TestArtifactNaming:
    """Property tests for derive_artifact_name and base_source_id."""

    @given(source_id=source_id_strategy, quality=quality_strategy)
    @settings(max_examples=100)
    def test_derivation_is_deterministic(self, source_id: str, quality: str) -> None:
        """**Feature: video-delivery, Property 1: Naming determinism and inverse**

        Deriving the same (source, quality) twice SHALL give the same artifact id.
        """
        assert derive_artifact_name(source_id, quality) == derive_artifact_name(source_id, quality)

    @given(source_id=source_id_strategy, quality=quality_strategy)
    @settings(max_examples=100)
    def test_inverse_recovers_source(self, source_id: str, quality: str) -> None:
        """**Feature: video-delivery, Property 1: Naming determinism and inverse**

        base_source_id SHALL recover the exact source from any derived artifact.
        """
        artifact = derive_artifact_name(source_id, quality)
        assert base_source_id(artifact) == source_id

    @given(source_id=source_id_strategy)
    @settings(max_examples=100)
    def test_qualities_never_collide(self, source_id: str) -> None:
        """**Feature: video-delivery, Property 1: Naming determinism and inverse**

        Distinct qualities of one source SHALL map to distinct artifact ids,
        none equal to the source.
        """
        names = {derive_artifact_name(source_id, q) for q in QUALITY_PROFILES}
        assert len(names) == len(QUALITY_PROFILES)
        assert source_id not in names

    @given(source_id=source_id_strategy, first=quality_strategy, second=quality_strategy)
    @settings(max_examples=100)
    def test_rederiving_never_nests(self, source_id: str, first: str, second: str) -> None:
        """**Feature: video-delivery, Property 1: Naming determinism and inverse**

        Deriving from an artifact id SHALL equal deriving from its source.
        """
        artifact = derive_artifact_name(source_id, first)
        assert derive_artifact_name(artifact, second) == derive_artifact_name(source_id, second)

    @given(source_id=source_id_strategy, quality=quality_strategy)
    @settings(max_examples=100)
    def test_artifact_key_round_trip(self, source_id: str, quality: str) -> None:
        """**Feature: video-delivery, Property 1: Naming determinism and inverse**"""
        key = ArtifactKey(source_id, quality)
        assert ArtifactKey.decode(key.encode()) == key

    @given(source_id=source_id_strategy, quality=quality_strategy)
    @settings(max_examples=50)
    def test_renditions_share_listing_prefix(self, source_id: str, quality: str) -> None:
        artifact = derive_artifact_name(source_id, quality)
        assert artifact.startswith(rendition_listing_prefix(source_id))


class TestNamingExamples:
    def test_canonical_form(self) -> None:
        assert derive_artifact_name("lessons/intro.mp4", "480p") == "lessons/intro_480p.mp4"

    def test_missing_extension_is_kept_missing(self) -> None:
        artifact = derive_artifact_name("uploads/abc123", "720p")
        assert artifact == "uploads/abc123_720p"
        assert base_source_id(artifact) == "uploads/abc123"

    def test_extensionless_source_does_not_share_renditions(self) -> None:
        assert derive_artifact_name("uploads/abc123", "480p") != derive_artifact_name(
            "uploads/abc123.mp4", "480p"
        )

    def test_rendition_is_retargeted(self) -> None:
        assert derive_artifact_name("lessons/intro_720p.mp4", "360p") == "lessons/intro_360p.mp4"

    def test_legacy_trailing_marker(self) -> None:
        assert base_source_id("lessons/intro__480p__.mp4") == "lessons/intro.mp4"
        assert derive_artifact_name("lessons/intro__480p__.mp4", "720p") == "lessons/intro_720p.mp4"

    def test_legacy_infix_marker(self) -> None:
        parsed = ArtifactKey.decode("lessons/intro__480p__final.mp4")
        assert parsed.quality == "480p"
        assert parsed.base_id == "lessons/intro__final.mp4"

    def test_directory_dots_are_not_extensions(self) -> None:
        assert derive_artifact_name("v1.2/clip", "360p") == "v1.2/clip_360p"

    def test_source_is_not_a_rendition(self) -> None:
        parsed = ArtifactKey.decode("lessons/intro.mp4")
        assert not parsed.is_rendition
        assert parsed.encode() == "lessons/intro.mp4"

    def test_invalid_quality_rejected(self) -> None:
        with pytest.raises(ValueError):
            derive_artifact_name("lessons/intro.mp4", "hd")
