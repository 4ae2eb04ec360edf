"""
Tests for content.py - normalisation, hashing and update lineage helpers.
"""
import pytest

from truesight.services.content import (
    MAX_CONTENT_DIFF_CHARS,
    build_content_diff,
    exceeds_word_limit,
    hash_content,
    normalize_content,
    partition_media_urls,
    to_content_version,
    word_count,
)

from tests.fixtures.investigation_fixtures import EDITED_TEXT, SAMPLE_TEXT


class TestNormalizeContent:

    def test_collapses_whitespace_and_trims(self):
        assert normalize_content("  a \n\t b   c  ") == "a b c"

    def test_strips_zero_width_characters(self):
        assert normalize_content("fact\u200bcheck\ufeff") == "factcheck"

    def test_nfc_composes_accents(self):
        decomposed = "Cafe\u0301"
        assert normalize_content(decomposed) == "Caf\u00e9"

    def test_equivalent_observations_share_a_hash(self):
        """Two callers seeing the same post with different whitespace converge on one hash."""
        a = to_content_version(SAMPLE_TEXT)
        b = to_content_version(SAMPLE_TEXT.replace("  ", " ").replace("\n", "   "))
        assert a.content_hash == b.content_hash
        assert a.content_text == b.content_text


class TestHashing:

    def test_sha256_hex(self):
        digest = hash_content("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_different_text_different_hash(self):
        assert hash_content("a") != hash_content("b")


class TestWordLimit:

    def test_word_count(self):
        assert word_count("one two  three") == 3
        assert word_count("") == 0

    @pytest.mark.parametrize("text,limit,expected", [
        ("one two three", 3, False),
        ("one two three four", 3, True),
        ("", 0, False),
    ])
    def test_exceeds_word_limit(self, text, limit, expected):
        assert exceeds_word_limit(text, limit) is expected


class TestContentDiff:

    def test_diff_marks_changed_sentences(self):
        previous = to_content_version(SAMPLE_TEXT).content_text
        current = to_content_version(EDITED_TEXT).content_text
        diff = build_content_diff(previous, current)
        assert "-It is located in Berlin." in diff
        assert "+It is located in Paris." in diff
        changed = [line for line in diff.splitlines() if line[:1] in "+-" and line[:3] not in ("+++", "---")]
        assert not any("Paris hosts" in line for line in changed)

    def test_identical_content_has_empty_diff(self):
        assert build_content_diff("Same. Text.", "Same. Text.") == ""

    def test_diff_is_capped(self):
        previous = " ".join(f"Sentence {i}." for i in range(5000))
        current = " ".join(f"Changed {i}." for i in range(5000))
        assert len(build_content_diff(previous, current)) == MAX_CONTENT_DIFF_CHARS


class TestMediaPartition:

    def test_splits_images_from_video(self):
        images, has_video = partition_media_urls([
            "https://cdn.example.com/a.png",
            "https://cdn.example.com/clip.mp4?sig=1",
            "https://cdn.example.com/b.jpg",
        ])
        assert images == ["https://cdn.example.com/a.png", "https://cdn.example.com/b.jpg"]
        assert has_video is True

    def test_none_is_empty(self):
        assert partition_media_urls(None) == ([], False)
