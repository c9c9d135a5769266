from __future__ import annotations

import logging
import mimetypes
import os
from pathlib import Path
from urllib.parse import quote

import httpx

logger = logging.getLogger("records.attachments")

# Leading bytes of common upload formats.
_SIGNATURES: list[tuple[bytes, str]] = [
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b", "application/gzip"),
    (b"{\\rtf", "text/rtf"),
]


def _supabase_url() -> str:
    return (os.getenv("SUPABASE_URL") or "").strip().rstrip("/")


def _supabase_service_role_key() -> str:
    return (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()


def _supabase_enabled() -> bool:
    return bool(_supabase_url() and _supabase_service_role_key())


def uploads_bucket() -> str:
    return (os.getenv("SUPABASE_STORAGE_BUCKET_UPLOADS") or "upload").strip()


def _supabase_headers(content_type: str | None = None) -> dict:
    headers = {
        "Authorization": f"Bearer {_supabase_service_role_key()}",
        "apikey": _supabase_service_role_key(),
        "x-upsert": "true",
    }
    if content_type:
        headers["Content-Type"] = content_type
    return headers


def _supabase_upload(bucket: str, storage_key: str, data: bytes, mime_type: str | None = None) -> None:
    path = quote(storage_key, safe="/")
    url = f"{_supabase_url()}/storage/v1/object/{bucket}/{path}"
    with httpx.Client(timeout=30.0) as client:
        res = client.post(url, headers=_supabase_headers(mime_type), content=data)
        if res.status_code >= 400:
            raise RuntimeError(f"supabase_upload_failed:{res.status_code}:{res.text}")


def _supabase_download(bucket: str, storage_key: str) -> bytes:
    path = quote(storage_key, safe="/")
    url = f"{_supabase_url()}/storage/v1/object/{bucket}/{path}"
    with httpx.Client(timeout=30.0) as client:
        res = client.get(url, headers=_supabase_headers())
        if res.status_code >= 400:
            raise FileNotFoundError(f"supabase_download_failed:{res.status_code}")
        return res.content


def detect_mime_type(data: bytes, filename: str | None = None) -> str:
    for signature, mime_type in _SIGNATURES:
        if data.startswith(signature):
            return mime_type
    if filename:
        guessed = mimetypes.guess_type(filename)[0]
        if guessed:
            return guessed
    if not data:
        return "application/x-empty"
    try:
        data[:4096].decode("utf-8")
        return "text/plain"
    except UnicodeDecodeError:
        return "application/octet-stream"


def safe_storage_key(storage_key: str) -> str:
    return storage_key.replace("..", "_").replace("/", "_").replace("\\", "_")


class UploadStorage:
    """Writes upload payloads under a key (the owning note's id)."""

    def __init__(self, root: str | Path = "upload", bucket: str | None = None) -> None:
        self._root = Path(root)
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        return (self._bucket or uploads_bucket()).strip()

    def resolve_path(self, storage_key: str) -> Path:
        if _supabase_enabled():
            raise RuntimeError("resolve_path is unavailable when using Supabase storage")
        return self._root / safe_storage_key(storage_key)

    def write(self, storage_key: str, data: bytes, filename: str | None = None) -> dict:
        key = safe_storage_key(storage_key)
        mime_type = detect_mime_type(data, filename)
        if _supabase_enabled():
            _supabase_upload(self.bucket, key, data, mime_type=mime_type)
            path = None
        else:
            self._root.mkdir(parents=True, exist_ok=True)
            path_obj = self._root / key
            path_obj.write_bytes(data)
            path = str(path_obj)
        logger.info("upload_written key=%s size=%s mime_type=%s", key, len(data), mime_type)
        return {"storage_key": key, "size": len(data), "path": path, "mime_type": mime_type}

    def read(self, storage_key: str) -> bytes:
        if _supabase_enabled():
            return _supabase_download(self.bucket, safe_storage_key(storage_key))
        return self.resolve_path(storage_key).read_bytes()
