import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Stage(Enum):
    """Orchestrator states, in the order a successful run visits them."""

    INIT = "Processing Started"
    VALIDATING = "File Validated"
    DOWNLOADING = "Saving File"
    PROBING = "Checking Duration"
    TRANSCODING = "Converting to MP3"
    TAGGING = "Adding Metadata"
    SEGMENTING = "Segmenting audio"
    WAV_SEGMENTING = "Segmenting WAV file"
    WAV_PREPARING = "Preparing WAV segments"
    PREPARING = "Preparing MP3 segments"
    FINALIZING = "Finalizing"
    COMPLETED = "Processing complete"
    FAILED = "Processing failed"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ProgressEvent:
    type: str
    progress: float
    stage: str
    details: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_details: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.type in ("complete", "error")

    def to_dict(self) -> Dict[str, Any]:
        if self.type == "error":
            data = {"type": "error", "progress": self.progress, "stage": self.stage, "error": self.error}
            if self.error_details:
                data["details"] = self.error_details
            return data
        data = {
            "type": self.type,
            "progress": self.progress,
            "stage": self.stage,
            "details": self.details,
        }
        if self.result is not None:
            data.update(self.result)
        return data


@dataclass
class SegmentDescriptor:
    index: int
    name: str
    path: Optional[Path] = None
    data: Optional[bytes] = None

    @staticmethod
    def name_for(index: int) -> str:
        return f"segment_{index:03d}.mp3"


@dataclass
class ProcessingTask:
    task_id: str
    stage: str = Stage.INIT.value
    percent: float = 0.0
    status: TaskStatus = TaskStatus.PENDING
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_details: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def finished(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    def snapshot(self) -> Dict[str, Any]:
        """Return the polling view of the task, shaped like a progress event."""
        if self.status is TaskStatus.FAILED:
            kind = "error"
        elif self.status is TaskStatus.COMPLETED:
            kind = "complete"
        else:
            kind = "progress"
        data = {
            "taskId": self.task_id,
            "type": kind,
            "status": self.status.value,
            "progress": self.percent,
            "stage": self.stage,
            "details": dict(self.details),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.status is TaskStatus.FAILED:
            data["error"] = self.error
            if self.error_details:
                data["errorDetails"] = self.error_details
        if self.result is not None:
            data["result"] = self.result
        return data
