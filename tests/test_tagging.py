import pytest

from conftest import FakeRunner
from trackprep.errors import ProcessExitError, TagWriteError
from trackprep.services.tagging import TrackTags, write_tags


def test_nothing_to_tag_is_a_no_op(tmp_path):
    runner = FakeRunner()
    mp3 = tmp_path / "output.mp3"
    mp3.write_bytes(b"ID3")
    assert write_tags(mp3, TrackTags(), runner, "Processed with TrackPrep") is False
    assert runner.calls == []


def test_tags_and_cover_are_written(tmp_path):
    runner = FakeRunner()
    mp3 = tmp_path / "output.mp3"
    mp3.write_bytes(b"ID3old")
    tags = TrackTags(title="Song", artist="Someone", genre="House", cover=b"\xff\xd8jpeg", cover_mime="image/jpeg")
    assert write_tags(mp3, tags, runner, "Processed with TrackPrep", year=2024) is True

    args = runner.calls_of("tag")[0]
    metadata = [args[i + 1] for i, a in enumerate(args) if a == "-metadata"]
    assert metadata == ["title=Song", "artist=Someone", "genre=House", "date=2024", "comment=Processed with TrackPrep"]
    assert args[args.index("-c") + 1] == "copy"
    assert args.count("-i") == 2
    assert mp3.read_bytes() == b"ID3tag-mp3-data"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["output.mp3"]


def test_missing_fields_are_skipped(tmp_path):
    runner = FakeRunner()
    mp3 = tmp_path / "output.mp3"
    mp3.write_bytes(b"ID3")
    write_tags(mp3, TrackTags(artist="Someone"), runner, "c", year=2024)
    args = runner.calls_of("tag")[0]
    assert "title=None" not in args
    assert "artist=Someone" in args
    assert args.count("-i") == 1


def test_tag_failure_leaves_file_untouched(tmp_path):
    runner = FakeRunner()
    runner.failures["tag"] = ProcessExitError("ffmpeg", 1, "Could not write header")
    mp3 = tmp_path / "output.mp3"
    mp3.write_bytes(b"ID3old")
    with pytest.raises(TagWriteError):
        write_tags(mp3, TrackTags(title="Song", cover=b"png", cover_mime="image/png"), runner, "c")
    assert mp3.read_bytes() == b"ID3old"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["output.mp3"]
