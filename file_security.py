"""
Security checks for uploaded contact-form documents.

Each file goes through five stages and stops at the first failure:

1. dangerous extension denylist
2. extension / declared content type consistency
3. magic-byte signature of the declared type
4. malicious content patterns (non-image types only)
5. size bounds

A batch is all-or-nothing: if any file fails, every file in the batch is
deleted and the caller gets the itemized reasons for the failing files.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional
import os
import re

from config import FILE_VALIDATION_WORKERS, MAX_FILE_SIZE
from errors import SecurityRejected
from submission import UploadedFile, cleanup_files

HEADER_BYTES = 16

# Magic bytes per declared content type. None means the type has no signature.
FILE_SIGNATURES: Dict[str, List[Optional[bytes]]] = {
    "application/pdf": [b"%PDF"],
    "image/jpeg": [b"\xff\xd8\xff"],
    "image/jpg": [b"\xff\xd8\xff"],
    "image/png": [b"\x89PNG\r\n\x1a\n"],
    "application/msword": [b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"],  # OLE2 compound file
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": [b"PK\x03\x04"],  # ZIP
    "text/plain": [None],
}

EXTENSION_TO_MIME = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".txt": "text/plain",
}

JPEG_MIME_TYPES = ("image/jpeg", "image/jpg")

DANGEROUS_EXTENSIONS = frozenset([
    ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".js", ".jar",
    ".app", ".deb", ".pkg", ".rpm", ".dmg", ".sh", ".ps1", ".msi", ".dll",
    ".php", ".asp", ".aspx", ".jsp", ".html", ".htm", ".xml", ".svg",
    ".zip", ".rar", ".7z", ".tar", ".gz", ".bz2", ".iso", ".bin",
])

MALICIOUS_PATTERNS = [
    re.compile(rb"<script[^>]*>.*?</script>", re.IGNORECASE),
    re.compile(rb"<iframe[^>]*>.*?</iframe>", re.IGNORECASE),
    re.compile(rb"javascript:", re.IGNORECASE),
    re.compile(rb"onerror=", re.IGNORECASE),
    re.compile(rb"onload=", re.IGNORECASE),
    re.compile(rb"eval\(", re.IGNORECASE),
    re.compile(rb"base64_decode", re.IGNORECASE),
    re.compile(rb"system\(", re.IGNORECASE),
    re.compile(rb"exec\(", re.IGNORECASE),
    re.compile(rb"shell_exec", re.IGNORECASE),
    re.compile(rb"passthru\(", re.IGNORECASE),
    re.compile(rb"proc_open", re.IGNORECASE),
    re.compile(rb"popen\(", re.IGNORECASE),
]


def _extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


def is_dangerous_extension(filename: str) -> bool:
    return _extension(filename) in DANGEROUS_EXTENSIONS


def extension_matches_mime(filename: str, mime_type: str) -> bool:
    ext = _extension(filename)
    expected = EXTENSION_TO_MIME.get(ext)
    if not expected:
        return False
    if expected == mime_type:
        return True
    # jpg and jpeg are interchangeable, as are image/jpg and image/jpeg
    return ext in (".jpg", ".jpeg") and mime_type in JPEG_MIME_TYPES


def matches_signature(header: bytes, mime_type: str) -> bool:
    signatures = FILE_SIGNATURES.get(mime_type)
    if not signatures:
        return False
    return any(signature is None or header.startswith(signature) for signature in signatures)


def find_malicious_patterns(content: bytes) -> List[str]:
    return [
        f"Malicious pattern detected: {pattern.pattern.decode('ascii')}"
        for pattern in MALICIOUS_PATTERNS
        if pattern.search(content)
    ]


def read_file_header(path: str, size: int = HEADER_BYTES) -> bytes:
    with open(path, "rb") as f:
        return f.read(size)


class FileSecurityValidator:
    def __init__(self, max_file_size: int = MAX_FILE_SIZE, max_workers: int = FILE_VALIDATION_WORKERS):
        self.max_file_size = max_file_size
        self.max_workers = max(max_workers, 1)

    def validate_file(self, uploaded: UploadedFile) -> List[str]:
        """Run every stage against one file. Returns the errors of the first failing stage."""
        name = uploaded.original_name
        mime_type = uploaded.declared_mime_type

        if is_dangerous_extension(name):
            return ["File extension is not allowed for security reasons"]

        if not extension_matches_mime(name, mime_type):
            return ["File extension does not match the file type"]

        try:
            header = read_file_header(uploaded.disk_path)
            if not matches_signature(header, mime_type):
                return ["File type verification failed - file may be corrupted or disguised"]

            if not mime_type.startswith("image/"):
                with open(uploaded.disk_path, "rb") as f:
                    threats = find_malicious_patterns(f.read())
                if threats:
                    return threats

            size = os.path.getsize(uploaded.disk_path)
        except OSError as e:
            print(f"FILE REJECTED: Could not read {uploaded.disk_path}: {e}")
            return ["File could not be read"]

        if size == 0:
            return ["File is empty"]
        if size > self.max_file_size:
            return ["File exceeds maximum size limit"]

        return []

    def validate_batch(self, files: List[UploadedFile]) -> None:
        """
        Validate every file of a submission. If any file fails, delete the whole
        batch and raise SecurityRejected with per-file reasons.
        """
        if not files:
            return

        workers = min(self.max_workers, len(files))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="file-validation") as pool:
            results = list(pool.map(self.validate_file, files))

        failures = [
            {"file": uploaded.sanitized_name, "errors": errors}
            for uploaded, errors in zip(files, results)
            if errors
        ]
        if failures:
            for failure in failures:
                print(f"FILE REJECTED: {failure['file']}: {'; '.join(failure['errors'])}")
            cleanup_files(files)
            raise SecurityRejected("File security validation failed", errors=failures)


file_validator = FileSecurityValidator()
