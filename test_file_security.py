import os

import pytest
from errors import SecurityRejected
from file_security import (
    FileSecurityValidator,
    extension_matches_mime,
    find_malicious_patterns,
    is_dangerous_extension,
    matches_signature,
)
from submission import UploadedFile, sanitize_filename

PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\n%%EOF\n"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32
DOCX_BYTES = b"PK\x03\x04" + b"\x00" * 32


@pytest.fixture
def make_file(tmp_path):
    def _make(name, content, mime_type):
        path = tmp_path / f"upload-{len(os.listdir(tmp_path))}"
        path.write_bytes(content)
        return UploadedFile(
            disk_path=str(path),
            original_name=name,
            sanitized_name=sanitize_filename(name),
            declared_mime_type=mime_type,
            size_bytes=len(content),
        )
    return _make


@pytest.fixture
def validator():
    return FileSecurityValidator(max_file_size=1024, max_workers=3)


def test_valid_pdf(validator, make_file):
    assert validator.validate_file(make_file("resume.pdf", PDF_BYTES, "application/pdf")) == []


def test_valid_images_and_text(validator, make_file):
    assert validator.validate_file(make_file("photo.png", PNG_BYTES, "image/png")) == []
    assert validator.validate_file(make_file("photo.jpg", JPEG_BYTES, "image/jpeg")) == []
    assert validator.validate_file(make_file("photo.jpeg", JPEG_BYTES, "image/jpg")) == []
    assert validator.validate_file(make_file("notes.txt", b"Marks: 87 / 100", "text/plain")) == []
    docx = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    assert validator.validate_file(make_file("letter.docx", DOCX_BYTES, docx)) == []


def test_pdf_with_wrong_magic_bytes(validator, make_file):
    """Extension and declared type both say PDF, the content does not"""
    disguised = make_file("resume.pdf", b"MZ\x90\x00" + b"\x00" * 32, "application/pdf")
    assert validator.validate_file(disguised) == [
        "File type verification failed - file may be corrupted or disguised"
    ]


@pytest.mark.parametrize("mime_type", ["application/pdf", "application/octet-stream", "text/plain"])
def test_exe_rejected_regardless_of_declared_type(validator, make_file, mime_type):
    payload = make_file("payload.exe", PDF_BYTES, mime_type)
    assert validator.validate_file(payload) == ["File extension is not allowed for security reasons"]


def test_extension_type_mismatch(validator, make_file):
    mismatched = make_file("photo.png", PDF_BYTES, "application/pdf")
    assert validator.validate_file(mismatched) == ["File extension does not match the file type"]


def test_malicious_text_content(validator, make_file):
    script = make_file("notes.txt", b"hello <script>alert(1)</script>", "text/plain")
    errors = validator.validate_file(script)
    assert errors
    assert all(error.startswith("Malicious pattern detected") for error in errors)


def test_malicious_pdf_content(validator, make_file):
    """Every non-image type is content scanned, not only plain text"""
    pdf = make_file("brochure.pdf", PDF_BYTES + b"<script>fetch(\"/steal\")</script>", "application/pdf")
    errors = validator.validate_file(pdf)
    assert errors
    assert all(error.startswith("Malicious pattern detected") for error in errors)


def test_images_are_not_content_scanned(validator, make_file):
    image = make_file("photo.png", PNG_BYTES + b"eval(", "image/png")
    assert validator.validate_file(image) == []


def test_size_bounds(validator, make_file):
    assert validator.validate_file(make_file("empty.txt", b"", "text/plain")) == ["File is empty"]
    big = make_file("big.pdf", PDF_BYTES + b"0" * 2048, "application/pdf")
    assert validator.validate_file(big) == ["File exceeds maximum size limit"]


def test_missing_file_rejected(validator, make_file):
    uploaded = make_file("resume.pdf", PDF_BYTES, "application/pdf")
    os.remove(uploaded.disk_path)
    assert validator.validate_file(uploaded) == ["File could not be read"]


def test_batch_passes(validator, make_file):
    files = [
        make_file("a.pdf", PDF_BYTES, "application/pdf"),
        make_file("b.pdf", PDF_BYTES, "application/pdf"),
    ]
    validator.validate_batch(files)
    assert all(os.path.exists(f.disk_path) for f in files)


def test_batch_failure_deletes_every_file(validator, make_file):
    """One bad file invalidates and removes the whole batch"""
    good = make_file("a.pdf", PDF_BYTES, "application/pdf")
    bad = make_file("payload.exe", b"MZ", "application/octet-stream")
    also_good = make_file("c.png", PNG_BYTES, "image/png")

    with pytest.raises(SecurityRejected) as exc_info:
        validator.validate_batch([good, bad, also_good])

    assert exc_info.value.status_code == 400
    assert exc_info.value.errors == [
        {"file": "payload.exe", "errors": ["File extension is not allowed for security reasons"]}
    ]
    assert not any(os.path.exists(f.disk_path) for f in (good, bad, also_good))


def test_helpers():
    assert is_dangerous_extension("INSTALL.EXE")
    assert not is_dangerous_extension("resume.pdf")
    assert extension_matches_mime("photo.JPG", "image/jpeg")
    assert not extension_matches_mime("archive.zip", "application/zip")
    assert matches_signature(b"%PDF-1.7", "application/pdf")
    assert matches_signature(b"anything", "text/plain")
    assert not matches_signature(b"%PDF-1.7", "application/x-unknown")
    assert find_malicious_patterns(b"<?php shell_exec('ls'); ?>")
    assert find_malicious_patterns(b"plain old text") == []


def test_sanitize_filename():
    assert sanitize_filename("../../etc/passwd") == "__etc_passwd"
    assert sanitize_filename('bad<name>.pdf') == "badname.pdf"
    assert sanitize_filename("") == "unnamed-file"
    long_name = "a" * 300 + ".pdf"
    assert len(sanitize_filename(long_name)) == 255
    assert sanitize_filename(long_name).endswith(".pdf")
