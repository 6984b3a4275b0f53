"""
FileBlobStore — durable storage for downloaded media and avatars.

Data layout:
  {blob_dir}/
    inbox-media/{tenant}/{instance}/{kind}/{remote_id}.{ext}
    avatars/{tenant}/{contact_id}.{ext}

Blobs are written once (tmp file + rename) and served under
`public_base_url`, so the URL handed to contacts and flows is stable.
"""
from __future__ import annotations

import re
import structlog
from pathlib import Path

logger = structlog.get_logger()

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/aac": "aac",
    "video/mp4": "mp4",
    "video/3gpp": "3gp",
    "application/pdf": "pdf",
}


def guess_extension(mimetype: str, fallback: str = "bin") -> str:
    base = (mimetype or "").split(";")[0].strip().lower()
    if base in _EXTENSIONS:
        return _EXTENSIONS[base]
    if "/" in base:
        sub = base.split("/", 1)[1]
        if re.fullmatch(r"[a-z0-9]{1,5}", sub):
            return sub
    return fallback


def _safe(part: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", part or "unknown")


class FileBlobStore:
    def __init__(self, blob_dir: str = "./data/blobs", public_base_url: str = "/media"):
        self._root = Path(blob_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._public_base_url = public_base_url.rstrip("/")

    @staticmethod
    def make_key(*parts: str, ext: str) -> str:
        *dirs, name = [_safe(p) for p in parts]
        return "/".join(dirs + [f"{name}.{ext}"])

    def url_for(self, key: str) -> str:
        return f"{self._public_base_url}/{key}"

    def is_stored_url(self, url: str) -> bool:
        return bool(url) and url.startswith(self._public_base_url + "/")

    def path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes storage root: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def find(self, *parts: str) -> str:
        """Stored key for a blob whose extension is unknown; '' when absent."""
        *dirs, name = [_safe(p) for p in parts]
        folder = self._root.joinpath(*dirs)
        if not folder.exists():
            return ""
        for candidate in folder.glob(f"{name}.*"):
            if candidate.suffix != ".tmp":
                return "/".join(dirs + [candidate.name])
        return ""

    def put(self, key: str, data: bytes) -> str:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "wb") as f:
            f.write(data)
        tmp_path.rename(path)  # atomic on POSIX
        logger.debug("blob_stored", key=key, size=len(data))
        return self.url_for(key)

    def read(self, key: str) -> bytes:
        with open(self.path_for(key), "rb") as f:
            return f.read()
