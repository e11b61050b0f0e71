"""Tests for metadata.py -- first-non-empty merge."""

from pathlib import Path

from audiobook_assembler.metadata import first_tag, merge_metadata
from audiobook_assembler.models import ProbeResult


def _result(name: str = "a.mp3", **tags) -> ProbeResult:
    return ProbeResult(source=Path(name), duration_ms=1000, tags=tags)


class TestMergeMetadata:
    def test_first_file_wins(self):
        merged = merge_metadata([_result(album="A"), _result(album="B")])
        assert merged.album == "A"

    def test_skips_missing_values(self):
        merged = merge_metadata([_result(), _result(album="B")])
        assert merged.album == "B"

    def test_skips_blank_values(self):
        merged = merge_metadata([_result(artist="  "), _result(artist="Someone")])
        assert merged.artist == "Someone"

    def test_fields_resolved_independently(self):
        merged = merge_metadata(
            [
                _result(album="Album", date="2001"),
                _result(artist="Artist", composer="Reader", date="1999"),
            ]
        )
        assert merged.album == "Album"
        assert merged.artist == "Artist"
        assert merged.composer == "Reader"
        assert merged.date == "2001"

    def test_absent_fields_are_empty(self):
        merged = merge_metadata([_result(title="Only a title")])
        assert merged.album == ""
        assert merged.artist == ""
        assert merged.composer == ""
        assert merged.date == ""
        assert merged.cover is None

    def test_empty_results(self):
        merged = merge_metadata([])
        assert merged.album == ""


class TestCover:
    def test_first_non_none_candidate(self):
        merged = merge_metadata([_result()], [None, b"first", b"second"])
        assert merged.cover == b"first"

    def test_all_none(self):
        merged = merge_metadata([_result()], [None, None])
        assert merged.cover is None

    def test_stops_consuming_after_first_hit(self):
        pulled = []

        def candidates():
            for value in (None, b"img", b"other"):
                pulled.append(value)
                yield value

        merged = merge_metadata([_result()], candidates())
        assert merged.cover == b"img"
        assert pulled == [None, b"img"]


class TestFirstTag:
    def test_strips_value(self):
        assert first_tag([_result(album="  Padded ")], "album") == "Padded"

    def test_missing(self):
        assert first_tag([_result()], "album") == ""
