"""
services.upload_store - Keeps uploaded CSVs on disk for the life of a job.

The stored path is what the worker re-opens on every run, so a job can
resume from its checkpoint after a restart.
"""

from __future__ import annotations

import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from werkzeug.utils import secure_filename

import config
from import_engine.errors import UploadRejected

ALLOWED_EXTENSIONS = {".csv"}
_CHUNK = 64 * 1024


def save_upload(job_id: int, original_name: str, stream: BinaryIO) -> Path:
    """
    Copy the upload to UPLOAD_DIR/<job_id>/ and return the stored path.
    Raises UploadRejected for a wrong extension or oversize file.
    """
    filename = secure_filename(original_name or "")
    if Path(filename).suffix.lower() not in ALLOWED_EXTENSIONS:
        raise UploadRejected("Only CSV files are allowed")

    target_dir = Path(config.UPLOAD_DIR) / str(job_id)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{uuid.uuid4().hex[:8]}_{filename}"

    written = 0
    with open(target, "wb") as out:
        while True:
            chunk = stream.read(_CHUNK)
            if not chunk:
                break
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            written += len(chunk)
            if written > config.MAX_UPLOAD_BYTES:
                out.close()
                target.unlink(missing_ok=True)
                raise UploadRejected(
                    f"File exceeds the {config.MAX_UPLOAD_BYTES} byte upload limit")
            out.write(chunk)

    if written == 0:
        target.unlink(missing_ok=True)
        raise UploadRejected("Uploaded file is empty")
    return target


def remove_uploads(job_id: int) -> None:
    shutil.rmtree(Path(config.UPLOAD_DIR) / str(job_id), ignore_errors=True)


def discard(path: str | Path | None) -> None:
    if path:
        Path(path).unlink(missing_ok=True)
