import shutil

from flask import Flask, jsonify

from .services.process import ProcessRunner
from .services.progress import TaskStore
from .services.storage import LocalStorage
from .settings import PipelineConfig
from .utils.logging_config import setup_logging


def create_app(config=None, runner=None, storage=None):
    """Create and configure the Flask application.

    ``config`` defaults to :meth:`PipelineConfig.from_env`. ``runner`` and
    ``storage`` may be swapped out, which is how the tests run the whole
    pipeline without real binaries.
    """
    config = config or PipelineConfig.from_env()
    setup_logging(config)

    app = Flask(__name__)
    app.config["PIPELINE_CONFIG"] = config
    app.config["PROCESS_RUNNER"] = runner or ProcessRunner(timeout=config.process_timeout_sec)
    app.config["STORAGE"] = storage or LocalStorage(config.storage_dir)
    app.config["TASKS"] = TaskStore()
    # multipart overhead on top of the audio and cover parts
    app.config["MAX_CONTENT_LENGTH"] = config.max_file_bytes + 16 * 1024 * 1024

    @app.get("/healthz")
    def healthz():
        return jsonify(
            {
                "status": "ok",
                "ffmpeg": shutil.which(config.ffmpeg_bin) is not None,
                "ffprobe": shutil.which(config.ffprobe_bin) is not None,
            }
        )

    @app.errorhandler(413)
    def too_large(_e):
        return jsonify({"error": f"File size must not exceed {config.max_file_mb}MB"}), 413

    from .routes.process import bp as process_bp
    from .routes.tasks import bp as tasks_bp

    app.register_blueprint(process_bp)
    app.register_blueprint(tasks_bp)

    return app


__all__ = ["create_app"]
