import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Where sources are fetched from and finished files are uploaded to."""

    def download(self, ref: str) -> bytes:
        raise NotImplementedError

    def upload(self, data: bytes, name: Optional[str] = None) -> str:
        raise NotImplementedError


class LocalStorage(ObjectStorage):
    """Object storage backed by a directory; references are file names."""

    def __init__(self, root):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, ref: str) -> Path:
        safe = secure_filename(ref)
        if not safe or safe != ref:
            raise FileNotFoundError(f"Invalid storage reference: {ref!r}")
        return self.root / safe

    def download(self, ref: str) -> bytes:
        return self._path(ref).read_bytes()

    def upload(self, data: bytes, name: Optional[str] = None) -> str:
        suffix = Path(name).suffix.lower() if name else ""
        ref = uuid.uuid4().hex + suffix
        path = self.root / ref
        tmp = path.with_name(ref + ".tmp")
        with open(tmp, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
        logger.info("Stored %d bytes as %s", len(data), ref)
        return ref
