import logging
import threading
import uuid

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from ..pipeline import AudioJob, EmbeddedDelivery, Pipeline
from ..services.progress import StreamingSink
from ..services.tagging import TrackTags

logger = logging.getLogger(__name__)

bp = Blueprint("process", __name__)


def _form_text(name):
    value = (request.form.get(name) or "").strip()
    return value or None


def _client_segments():
    """Read ``wavSegment0..N-1`` and the optional ``wavManifest`` upload."""
    try:
        count = int(request.form.get("wavSegmentCount", "0"))
    except ValueError:
        return None, None, "wavSegmentCount must be an integer"
    if count < 0:
        return None, None, "wavSegmentCount must not be negative"
    parts = []
    for i in range(count):
        f = request.files.get(f"wavSegment{i}")
        if not f:
            return None, None, f"Missing WAV segment {i} (form field 'wavSegment{i}')"
        parts.append((f.filename or "", f.read()))
    if not parts:
        return None, None, "No WAV segments provided (form fields must be 'wavSegment0'...)"
    manifest = None
    m = request.files.get("wavManifest")
    if m:
        try:
            manifest = m.read().decode("utf-8")
        except UnicodeDecodeError:
            return None, None, "wavManifest must be UTF-8 JSON"
    return parts, manifest, None


@bp.post("/process")
def process():
    """Run one file through the pipeline, streaming progress as server-sent events.

    The response stays open until the terminal event. Segments and the final
    MP3 come back base64 encoded inside that event. Closing the connection
    cancels the run.

    With ``clientSegmentation=true`` the source arrives already cut into WAV
    chunks (``wavSegmentCount`` plus ``wavSegment0``...), which are joined
    server-side; ``audio`` may then be omitted.
    """
    f = request.files.get("audio")
    wav_parts, wav_manifest = [], None
    if (request.form.get("clientSegmentation") or "").lower() == "true":
        wav_parts, wav_manifest, error = _client_segments()
        if error:
            return jsonify({"error": error}), 400
        filename = f.filename if f and f.filename else "input.wav"
        data, mime = None, "audio/wav"
        size = sum(len(payload) for _, payload in wav_parts)
    else:
        if not f or not f.filename:
            return jsonify({"error": "No audio file provided (form field must be 'audio')."}), 400
        filename = f.filename
        data = f.read()
        mime = f.mimetype if f.mimetype != "application/octet-stream" else None
        size = len(data)

    image = request.files.get("image")
    cover = image.read() if image and image.filename else None
    job = AudioJob(
        filename=filename,
        mime_type=mime,
        size=size,
        data=data,
        wav_parts=wav_parts,
        wav_manifest=wav_manifest,
        tags=TrackTags(
            title=_form_text("trackname"),
            artist=_form_text("artist"),
            genre=_form_text("genre"),
            cover=cover,
            cover_mime=image.mimetype if cover else None,
        ),
    )

    task_id = uuid.uuid4().hex
    config = current_app.config["PIPELINE_CONFIG"]
    pipeline = Pipeline(config, runner=current_app.config["PROCESS_RUNNER"], storage=current_app.config["STORAGE"])
    sink = StreamingSink()
    cancel = threading.Event()
    t = threading.Thread(
        target=pipeline.run,
        args=(task_id, job, sink, EmbeddedDelivery(), cancel),
        name=f"process-{task_id[:8]}",
        daemon=True,
    )
    t.start()

    def generate():
        finished = False
        try:
            for frame in sink.frames():
                yield frame
            finished = True
        finally:
            if not finished:
                logger.info("Task %s: client went away, cancelling", task_id)
                cancel.set()
            sink.detach()

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    }
    return Response(stream_with_context(generate()), mimetype="text/event-stream", headers=headers)
