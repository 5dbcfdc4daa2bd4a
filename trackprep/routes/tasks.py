import logging
import re
import threading
import uuid

from flask import Blueprint, current_app, jsonify, make_response, request

from ..pipeline import AudioJob, Pipeline, StorageDelivery
from ..services.tagging import TrackTags

logger = logging.getLogger(__name__)

bp = Blueprint("tasks", __name__)

TASK_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def _text(body, key):
    value = body.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@bp.post("/tasks")
def submit():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400
    file_id = _text(body, "fileId")
    if not file_id:
        return jsonify({"error": "fileId is required"}), 400

    task_id = _text(body, "taskId") or uuid.uuid4().hex
    if not TASK_ID_RE.match(task_id):
        return jsonify({"error": "taskId may only contain letters, digits, '-' and '_'"}), 400

    size = body.get("size")
    if size is not None:
        try:
            size = int(size)
        except (TypeError, ValueError):
            return jsonify({"error": "size must be an integer"}), 400

    config = current_app.config["PIPELINE_CONFIG"]
    tasks = current_app.config["TASKS"]
    storage = current_app.config["STORAGE"]
    tasks.cleanup_expired(config.task_ttl_minutes * 60)
    try:
        cancel = tasks.create(task_id)
    except KeyError:
        return jsonify({"error": f"Task {task_id} already exists"}), 409

    job = AudioJob(
        filename=file_id,
        mime_type=_text(body, "mimeType"),
        size=size,
        source_ref=file_id,
        cover_ref=_text(body, "imageId"),
        tags=TrackTags(
            title=_text(body, "trackname"),
            artist=_text(body, "artist"),
            genre=_text(body, "genre"),
        ),
    )
    pipeline = Pipeline(config, runner=current_app.config["PROCESS_RUNNER"], storage=storage)
    t = threading.Thread(
        target=pipeline.run,
        args=(task_id, job, tasks, StorageDelivery(storage), cancel),
        name=f"task-{task_id[:8]}",
        daemon=True,
    )
    t.start()
    logger.info("Task %s queued for %s", task_id, file_id)

    return jsonify({"taskId": task_id, "progress_url": f"/progress/{task_id}"}), 202


@bp.get("/progress/<task_id>")
def progress(task_id):
    snapshot = current_app.config["TASKS"].get(task_id)
    if snapshot is None:
        resp = make_response(jsonify({"error": "Task not found"}), 404)
    else:
        resp = make_response(jsonify(snapshot), 200)
    resp.headers["Cache-Control"] = "no-store, max-age=0"
    return resp


@bp.delete("/tasks/<task_id>")
def cancel(task_id):
    tasks = current_app.config["TASKS"]
    snapshot = tasks.get(task_id)
    if snapshot is None:
        return jsonify({"error": "Task not found"}), 404
    if not tasks.cancel(task_id):
        return jsonify({"error": "Task already finished", "status": snapshot["status"]}), 409
    logger.info("Task %s: cancellation requested", task_id)
    return jsonify({"taskId": task_id, "cancelled": True}), 202
