import io
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class StoredBlob:
    key: str
    size: int
    uploaded_at: str
    path: Path
    http_metadata: Dict[str, str] = field(default_factory=dict)
    custom_metadata: Dict[str, str] = field(default_factory=dict)

    def read(self) -> bytes:
        with open(self.path, "rb") as f:
            return f.read()


class BlobStore:
    """Staged documents on local disk: ``<key>.bin`` plus a ``<key>.json`` sidecar."""

    def __init__(self, root):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key):
        if not key or key.startswith(".") or not _KEY_RE.match(key):
            raise ValueError(f"Invalid blob key: {key!r}")
        return self._root / f"{key}.bin", self._root / f"{key}.json"

    def put(self, key, stream, content_type=None, content_disposition=None, metadata=None) -> StoredBlob:
        data_path, meta_path = self._paths(key)
        if isinstance(stream, (bytes, bytearray)):
            stream = io.BytesIO(stream)

        fd, tmp = tempfile.mkstemp(dir=self._root, suffix=".part")
        try:
            with os.fdopen(fd, "wb") as out:
                shutil.copyfileobj(stream, out)
            os.replace(tmp, data_path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

        http_metadata = {}
        if content_type:
            http_metadata["content_type"] = content_type
        if content_disposition:
            http_metadata["content_disposition"] = content_disposition
        meta = {
            "size": data_path.stat().st_size,
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "http_metadata": http_metadata,
            "custom_metadata": dict(metadata or {}),
        }
        self._write_json(meta_path, meta)
        logger.debug("Stored blob %s (%s bytes)", key, meta["size"])
        return self._to_blob(key, data_path, meta)

    def get(self, key) -> Optional[StoredBlob]:
        data_path, meta_path = self._paths(key)
        if not (data_path.exists() and meta_path.exists()):
            return None
        with open(meta_path, "r", encoding="utf-8") as f:
            meta = json.load(f)
        return self._to_blob(key, data_path, meta)

    def delete(self, key) -> None:
        """Remove a blob; deleting a missing key is not an error."""
        data_path, meta_path = self._paths(key)
        for path in (meta_path, data_path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass

    def _write_json(self, path, payload):
        fd, tmp = tempfile.mkstemp(dir=self._root, suffix=".part")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp, path)

    @staticmethod
    def _to_blob(key, data_path, meta):
        return StoredBlob(
            key=key,
            size=int(meta.get("size", 0)),
            uploaded_at=meta.get("uploaded_at", ""),
            path=data_path,
            http_metadata=meta.get("http_metadata") or {},
            custom_metadata=meta.get("custom_metadata") or {},
        )
