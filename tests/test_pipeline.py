import base64
import dataclasses
import json
import logging
import threading
from pathlib import Path

import pytest

from conftest import FakeRunner, ListSink, wav_bytes
from trackprep.errors import ProcessExitError
from trackprep.pipeline import AudioJob, EmbeddedDelivery, Pipeline, StorageDelivery, clock
from trackprep.services.tagging import TrackTags


def _job(**kw):
    kw.setdefault("data", b"RIFF....WAVEfmt ")
    kw.setdefault("size", len(kw["data"]) if kw["data"] is not None else None)
    return AudioJob(filename="tone.wav", **kw)


def _run(config, runner, job, sink, delivery=None, cancel=None, storage=None):
    pipeline = Pipeline(config, runner=runner, storage=storage)
    return pipeline.run("task-1", job, sink, delivery or EmbeddedDelivery(), cancel)


def _work_dir_empty(config):
    return list(Path(config.work_dir).iterdir()) == []


def test_clock():
    assert clock(0) == "0:00"
    assert clock(75.4) == "1:15"
    assert clock(720) == "12:00"


def test_successful_run_embeds_everything(config, sink):
    runner = FakeRunner(duration=25)
    result = _run(config, runner, _job(), sink)

    assert [s["name"] for s in result["segments"]] == ["segment_000.mp3", "segment_001.mp3", "segment_002.mp3"]
    assert base64.b64decode(result["segments"][1]["data"]) == b"ID3segment-10"
    assert result["finalAudio"].startswith("data:audio/mpeg;base64,")
    assert result["playlist"].count("#EXTINF:10.0,") == 3
    assert result["playlist"].endswith("SEGMENT_PLACEHOLDER_2\n#EXT-X-ENDLIST")

    percents = [e.progress for e in sink.events]
    assert percents == sorted(percents)
    assert percents[0] == 0 and percents[-1] == 100
    assert len(sink.terminal) == 1 and sink.events[-1].type == "complete"
    assert sink.closed == ["task-1"]
    assert _work_dir_empty(config)


def test_progress_details_per_phase(config, sink):
    _run(config, FakeRunner(duration=25), _job(), sink)
    by_kind = {}
    for e in sink.events:
        by_kind.setdefault(e.details.get("type"), []).append(e)

    conversion = [e for e in by_kind["conversion"] if "conversionProgress" in e.details]
    assert conversion[0].details["conversionProgress"] == "50%"
    assert conversion[0].details["message"] == "Conversion progress: 50% (0:12 from 0:25)"
    assert all(30 <= e.progress <= 45 for e in by_kind["conversion"])

    segmentation = [e for e in by_kind["segmentation"] if "totalSegments" in e.details]
    assert segmentation[-1].details["totalSegments"] == 3
    assert segmentation[-1].details["currentSegment"] == 3
    assert all(50 <= e.progress <= 70 for e in by_kind["segmentation"])

    preparation = by_kind["preparation"]
    assert preparation[-1].details["preparationProgress"] == 100
    assert all(75 <= e.progress <= 90 for e in preparation)

    assert any(e.progress == 95 and e.details["type"] == "playlist" for e in sink.events)


def test_over_long_audio_fails_before_transcoding(config, sink):
    runner = FakeRunner(duration=721)
    assert _run(config, runner, _job(), sink) is None
    event = sink.terminal[0]
    assert event.type == "error"
    assert event.error == "Audio duration must not exceed 12 minutes"
    assert runner.calls_of("transcode") == []
    assert _work_dir_empty(config)


def test_exactly_max_duration_is_accepted(config, sink):
    _run(config, FakeRunner(duration=720), _job(), sink)
    assert sink.events[-1].type == "complete"


@pytest.mark.parametrize(
    "job_kw, message",
    [
        ({"mime_type": "audio/mpeg"}, "File must be in WAV format"),
        ({"data": b"", "size": 0}, "Audio file is empty"),
        ({"size": 201 * 1024 * 1024}, "File size must not exceed 200MB"),
        ({"data": None, "size": None}, "No audio file provided"),
    ],
)
def test_validation_failures(config, sink, job_kw, message):
    runner = FakeRunner()
    _run(config, runner, _job(**job_kw), sink)
    assert sink.terminal[0].error == message
    assert runner.calls == []
    assert _work_dir_empty(config)


def test_transcode_failure_reports_and_cleans_up(config, sink):
    runner = FakeRunner()
    runner.failures["transcode"] = ProcessExitError("ffmpeg", 1, "Error while decoding stream")
    _run(config, runner, _job(), sink)
    event = sink.terminal[0]
    assert event.error == "Audio conversion to MP3 failed"
    assert "Error while decoding stream" in event.error_details
    assert event.progress >= 30
    assert runner.calls_of("trim") == []
    assert _work_dir_empty(config)


def test_tag_failure_is_not_fatal(config, sink):
    runner = FakeRunner()
    runner.failures["tag"] = ProcessExitError("ffmpeg", 1, "tag error")
    _run(config, runner, _job(tags=TrackTags(title="Song")), sink)
    assert sink.events[-1].type == "complete"
    assert any(e.stage == "Metadata skipped" for e in sink.events)


def test_tagging_skipped_without_tags(config, sink):
    runner = FakeRunner()
    _run(config, runner, _job(), sink)
    assert runner.calls_of("tag") == []
    assert not any(e.details.get("type") == "metadata" for e in sink.events)


def test_segment_failure_names_the_segment(config, sink):
    runner = FakeRunner(duration=25)
    runner.fail_trim_start = 20.0
    _run(config, runner, _job(), sink)
    assert sink.terminal[0].error == "Failed to create segment 2"
    assert _work_dir_empty(config)


def test_cancel_before_start(config, sink):
    cancel = threading.Event()
    cancel.set()
    runner = FakeRunner()
    _run(config, runner, _job(), sink, cancel=cancel)
    assert sink.terminal[0].error == "Processing cancelled"
    assert runner.calls == []


def test_cancel_while_transcoding(config, sink):
    runner = FakeRunner()
    runner.hold = "transcode"
    cancel = threading.Event()
    t = threading.Thread(target=_run, args=(config, runner, _job(), sink), kwargs={"cancel": cancel})
    t.start()
    assert runner.entered.wait(5)
    cancel.set()
    t.join(5)
    assert not t.is_alive()
    assert sink.terminal[0].error == "Processing cancelled"
    assert _work_dir_empty(config)


def test_storage_delivery_uploads_outputs(config, sink, storage):
    ref = storage.upload(b"RIFF....WAVEfmt ", "upload.wav")
    cover = storage.upload(b"\xff\xd8jpeg", "cover.jpg")
    runner = FakeRunner(duration=15)
    job = AudioJob(filename=ref, source_ref=ref, cover_ref=cover, tags=TrackTags(title="Song"))
    result = _run(config, runner, job, sink, delivery=StorageDelivery(storage), storage=storage)

    assert [s["name"] for s in result["segments"]] == ["segment_000.mp3", "segment_001.mp3"]
    assert storage.download(result["segments"][0]["reference"]) == b"ID3segment-0"
    assert storage.download(result["finalAudio"]) == b"ID3tag-mp3-data"
    assert runner.calls_of("tag")[0].count("-i") == 2


def test_missing_source_is_download_error(config, sink, storage):
    job = AudioJob(filename="missing.wav", source_ref="missing.wav")
    _run(config, FakeRunner(), job, sink, storage=storage)
    assert sink.terminal[0].error == "Could not download the audio file"


def test_missing_cover_is_not_fatal(config, sink, storage):
    ref = storage.upload(b"RIFF....WAVEfmt ", "upload.wav")
    job = AudioJob(filename=ref, source_ref=ref, cover_ref="gone.jpg", tags=TrackTags(title="Song"))
    _run(config, FakeRunner(), job, sink, delivery=StorageDelivery(storage), storage=storage)
    assert sink.events[-1].type == "complete"


def test_unreadable_duration_still_completes(config, sink):
    runner = FakeRunner(probe_output="N/A\n")
    result = _run(config, runner, _job(), sink)
    assert [s["name"] for s in result["segments"]] == ["segment_000.mp3"]
    assert result["playlist"].count("#EXTINF") == 1


def test_rerun_gives_same_playlist(config):
    first = _run(config, FakeRunner(duration=42), _job(), ListSink())
    second = _run(config, FakeRunner(duration=42), _job(), ListSink())
    assert first["playlist"] == second["playlist"]
    assert len(first["segments"]) == len(second["segments"]) == 5


def test_wav_chunks_and_manifest_are_delivered(config, sink):
    config = dataclasses.replace(config, wav_segment_max_mb=1.0)
    result = _run(config, FakeRunner(duration=25), _job(), sink)

    names = [s["name"] for s in result["wavSegments"]]
    assert names == [f"wav_segment_{i:03d}.wav" for i in range(5)]
    assert base64.b64decode(result["wavSegments"][2]["data"]) == b"RIFFwav-10"
    assert result["wavManifest"]["name"] == "wav_manifest.json"
    manifest = json.loads(result["wavManifest"]["data"])
    assert [s["fileName"] for s in manifest["segments"]] == names
    assert len(result["segments"]) == 3

    percents = [e.progress for e in sink.events]
    assert percents == sorted(percents)
    wav_events = [e for e in sink.events if e.details.get("type") == "wavSegmentation"]
    assert all(70 <= e.progress <= 73 for e in wav_events)
    assert wav_events[-1].details["message"] == "Created 5 WAV segments and manifest file"
    assert all(73 <= e.progress <= 75 for e in sink.events if e.details.get("type") == "wavPreparation")
    assert _work_dir_empty(config)


def test_wav_chunks_can_be_switched_off(config, sink):
    config = dataclasses.replace(config, wav_segments=False)
    runner = FakeRunner(duration=25)
    result = _run(config, runner, _job(), sink)
    assert "wavSegments" not in result and "wavManifest" not in result
    assert runner.calls_of("wavprobe") == [] and runner.calls_of("wavtrim") == []


def test_wav_chunk_failure_fails_the_run(config, sink):
    runner = FakeRunner(duration=25)
    runner.failures["wavtrim"] = ProcessExitError("ffmpeg", 1, "disk full")
    _run(config, runner, _job(), sink)
    assert sink.terminal[0].error == "Failed to create WAV segment 0"
    assert sink.terminal[0].progress >= 70
    assert _work_dir_empty(config)


def test_wav_outputs_uploaded_with_storage_delivery(config, sink, storage):
    ref = storage.upload(b"RIFF....WAVEfmt ", "upload.wav")
    job = AudioJob(filename=ref, source_ref=ref)
    result = _run(config, FakeRunner(duration=15), job, sink, delivery=StorageDelivery(storage), storage=storage)
    assert storage.download(result["wavSegments"][0]["reference"]) == b"RIFFwav-0"
    manifest = json.loads(storage.download(result["wavManifest"]["reference"]).decode("utf-8"))
    assert manifest["totalDuration"] == 15


def test_client_cut_wav_parts_are_joined(config, sink):
    parts = [("take 1.wav", wav_bytes(0.5)), ("take 2.wav", wav_bytes(0.25))]
    manifest = json.dumps({"segments": [{"fileName": "take_1.wav"}, {"fileName": "take_2.wav"}]})
    job = AudioJob(filename="input.wav", mime_type="audio/wav", wav_parts=parts, wav_manifest=manifest)
    runner = FakeRunner(duration=25)
    result = _run(config, runner, job, sink)

    assert [s["name"] for s in result["wavSegments"]] == ["take_1.wav", "take_2.wav"]
    assert base64.b64decode(result["wavSegments"][1]["data"]) == parts[1][1]
    assert result["wavManifest"]["data"] == manifest
    assert runner.calls_of("wavprobe") == [] and runner.calls_of("wavtrim") == []
    # the joined file is what gets transcoded
    transcode = runner.calls_of("transcode")[0]
    assert transcode[transcode.index("-i") + 1].endswith("input.wav")
    assert _work_dir_empty(config)


def test_unreadable_client_manifest_is_dropped(config, sink):
    job = AudioJob(filename="input.wav", mime_type="audio/wav", wav_parts=[("a.wav", wav_bytes())],
                   wav_manifest="{not json")
    result = _run(config, FakeRunner(), job, sink)
    assert result["wavManifest"] is None
    assert len(result["wavSegments"]) == 1


def test_mismatched_client_parts_are_rejected(config, sink):
    parts = [("a.wav", wav_bytes(sr=44100)), ("b.wav", wav_bytes(sr=22050))]
    job = AudioJob(filename="input.wav", mime_type="audio/wav", wav_parts=parts)
    runner = FakeRunner()
    _run(config, runner, job, sink)
    assert sink.terminal[0].error == "WAV segments must share one format"
    assert runner.calls == []
    assert _work_dir_empty(config)


def test_each_phase_is_logged_with_the_task_id(config, sink, caplog):
    caplog.set_level(logging.INFO, logger="trackprep")
    _run(config, FakeRunner(duration=25), _job(), sink)
    transitions = [r.getMessage() for r in caplog.records if r.name == "trackprep.services.progress"]
    for stage in ("File Validated", "Converting to MP3", "Segmenting audio", "Segmenting WAV file",
                  "Preparing WAV segments", "Preparing MP3 segments", "Finalizing"):
        assert any(m.startswith(f"Task task-1: {stage} at ") for m in transitions), stage
    assert all(m.startswith("Task task-1: ") for m in transitions)
