from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional
import os
import random
import re
import time
import uuid

from fastapi import UploadFile

import config
from errors import ValidationFailed

CHUNK_SIZE = 64 * 1024


class SubmissionState(str, Enum):
    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    FILES_VALIDATED = "files_validated"
    CONTENT_CHECKED = "content_checked"
    ACCEPTED = "accepted"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    DELIVERY_DEGRADED = "delivery_degraded"
    CLEANED_UP = "cleaned_up"
    REJECTED = "rejected"


# Terminal states have no outgoing edges. Cleanup is reachable from every
# post-acceptance state.
ALLOWED_TRANSITIONS = {
    SubmissionState.RECEIVED: {SubmissionState.RATE_CHECKED, SubmissionState.REJECTED},
    SubmissionState.RATE_CHECKED: {SubmissionState.FILES_VALIDATED, SubmissionState.REJECTED},
    SubmissionState.FILES_VALIDATED: {SubmissionState.CONTENT_CHECKED, SubmissionState.REJECTED},
    SubmissionState.CONTENT_CHECKED: {SubmissionState.ACCEPTED, SubmissionState.REJECTED},
    SubmissionState.ACCEPTED: {SubmissionState.DELIVERING, SubmissionState.CLEANED_UP},
    SubmissionState.DELIVERING: {
        SubmissionState.DELIVERED,
        SubmissionState.DELIVERY_DEGRADED,
        SubmissionState.CLEANED_UP,
    },
    SubmissionState.DELIVERED: {SubmissionState.CLEANED_UP},
    SubmissionState.DELIVERY_DEGRADED: {SubmissionState.CLEANED_UP},
    SubmissionState.CLEANED_UP: set(),
    SubmissionState.REJECTED: set(),
}


class InvalidTransition(ValueError):
    pass


@dataclass
class UploadedFile:
    disk_path: str
    original_name: str
    sanitized_name: str
    declared_mime_type: str
    size_bytes: int


@dataclass
class SubmissionAttempt:
    ip: str
    name: str = ""
    email: str = ""
    phone: str = ""
    subject: str = ""
    message: str = ""
    files: List[UploadedFile] = field(default_factory=list)
    verification_score: Optional[float] = None
    is_spam: bool = False
    state: SubmissionState = SubmissionState.RECEIVED
    submission_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    received_at: datetime = field(default_factory=datetime.now)

    def transition(self, state: SubmissionState) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Submission {self.submission_id} cannot move from {self.state.value} to {state.value}"
            )
        self.state = state


def cleanup_files(files: Iterable[UploadedFile]) -> int:
    """
    Delete the transient files of a submission. Errors are printed and never
    raised. Returns the number of files removed.
    """
    removed = 0
    for uploaded in files:
        try:
            os.remove(uploaded.disk_path)
            removed += 1
        except FileNotFoundError:
            pass
        except OSError as e:
            print(f"CLEANUP ERROR: Could not delete {uploaded.disk_path}: {e}")
    return removed


def purge_stale_uploads(upload_dir: Optional[str] = None, max_age: int = 86400) -> int:
    """Remove files left in the upload directory longer than ``max_age`` seconds."""
    upload_dir = upload_dir or config.UPLOAD_DIR
    if not os.path.isdir(upload_dir):
        return 0

    cutoff = time.time() - max_age
    removed = 0
    for entry in os.scandir(upload_dir):
        try:
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                os.remove(entry.path)
                removed += 1
        except OSError as e:
            print(f"CLEANUP ERROR: Could not purge {entry.path}: {e}")
    if removed:
        print(f"Purged {removed} stale upload(s) from {upload_dir}")
    return removed


def sanitize_filename(filename: str) -> str:
    """Strip path traversal, null bytes and control characters from a client filename."""
    sanitized = filename.replace("..", "").replace("/", "_").replace("\\", "_")
    sanitized = re.sub(r'[<>:"|?*\x00-\x1f]', "", sanitized)

    if len(sanitized) > 255:
        stem, extension = os.path.splitext(sanitized)
        sanitized = stem[:255 - len(extension)] + extension

    return sanitized or "unnamed-file"


def _disk_name(original_name: str) -> str:
    unique_suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
    extension = os.path.splitext(original_name)[1].lower()
    # Only keep short alphanumeric extensions on disk
    if not extension[1:].isalnum() or len(extension) > 10:
        extension = ""
    return f"documents-{unique_suffix}{extension}"


async def save_uploads(
    uploads: Optional[List[UploadFile]],
    upload_dir: Optional[str] = None,
    max_files: Optional[int] = None,
    max_size: Optional[int] = None,
) -> List[UploadedFile]:
    """
    Write the multipart file parts to transient storage.

    At most ``max_size + 1`` bytes are written per file so an oversized file is
    still caught by the size check without filling the disk.
    """
    upload_dir = upload_dir or config.UPLOAD_DIR
    max_files = config.MAX_FILES if max_files is None else max_files
    max_size = config.MAX_FILE_SIZE if max_size is None else max_size

    uploads = [upload for upload in (uploads or []) if upload.filename]
    if len(uploads) > max_files:
        raise ValidationFailed(
            f"Too many files. A maximum of {max_files} documents may be attached.",
            errors=[{"field": "documents", "message": f"Maximum {max_files} files allowed"}],
        )

    os.makedirs(upload_dir, exist_ok=True)
    saved: List[UploadedFile] = []
    try:
        for upload in uploads:
            disk_path = os.path.join(upload_dir, _disk_name(upload.filename))
            size = 0
            with open(disk_path, "wb") as out:
                saved.append(UploadedFile(
                    disk_path=disk_path,
                    original_name=upload.filename,
                    sanitized_name=sanitize_filename(upload.filename),
                    declared_mime_type=(upload.content_type or "").split(";")[0].strip().lower(),
                    size_bytes=0,
                ))
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    remaining = max_size + 1 - size
                    if remaining > 0:
                        out.write(chunk[:remaining])
                    size += len(chunk)
                    if size > max_size:
                        break
            saved[-1].size_bytes = min(size, max_size + 1)
            await upload.close()
    except Exception:
        cleanup_files(saved)
        raise
    return saved
