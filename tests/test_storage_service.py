import asyncio
import json
import re

import pytest
import requests

from atspect.core.exceptions import (
    AccessDeniedError,
    ConflictError,
    FileNotFoundInStorageError,
    FileTooLargeError,
    InvalidFileError,
    StorageError,
    TransportError,
)
from atspect.services.pdf_processor import UploadedDocument
from atspect.services.storage_service import StorageService, generate_file_path

from tests.conftest import no_sleep

BASE_URL = "https://backend.test"


def make_response(status_code, body=None, reason="OK"):
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason
    response._content = json.dumps(body).encode() if body is not None else b""
    return response


class FakeHttp:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, *outcomes):
        self.headers = {}
        self.outcomes = list(outcomes)
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_service(*outcomes):
    http = FakeHttp(*outcomes)
    return StorageService(BASE_URL, "service-key", http=http, sleep=no_sleep), http


def pdf_document(size=1024):
    return UploadedDocument(filename="resume.pdf", content=b"%" * size)


def test_generate_file_path_shape():
    """Test the generated blob path layout."""
    path = generate_file_path("user-123", "My Resume (final).PDF", "pdf")
    assert re.match(r"^user-123/pdf/\d+_[a-z0-9]{6}_my_resume_final_.pdf$", path)


def test_generate_file_path_requires_user_and_name():
    """Test path generation needs a user and a filename."""
    with pytest.raises(ValueError):
        generate_file_path("", "resume.pdf")


def test_auth_headers_sent_per_request():
    """Test credentials travel with each storage request, not on the shared session."""
    service, http = make_service(make_response(200, []))
    asyncio.run(service.list_buckets())

    assert http.headers == {}
    headers = http.calls[0]["headers"]
    assert headers["Authorization"] == "Bearer service-key"
    assert headers["apikey"] == "service-key"
    assert "x-client-info" in headers


def test_upload_file_posts_to_bucket_path():
    """Test an upload posts to the bucket path."""
    service, http = make_service(make_response(200, {"Key": "resumes/user-123/pdf/a.pdf"}))
    progress = []

    stored = asyncio.run(
        service.upload_file(pdf_document(), "user-123/pdf/a.pdf", bucket="resumes", on_progress=progress.append)
    )

    assert stored == "user-123/pdf/a.pdf"
    call = http.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == f"{BASE_URL}/storage/v1/object/resumes/user-123/pdf/a.pdf"
    assert call["headers"]["x-upsert"] == "false"
    assert call["headers"]["apikey"] == "service-key"
    assert [p["stage"] for p in progress] == ["uploading", "complete"]


def test_upload_rejects_empty_file_without_network():
    """Test empty files are rejected before any request."""
    service, http = make_service(make_response(200, {}))
    with pytest.raises(InvalidFileError):
        asyncio.run(service.upload_file(UploadedDocument("resume.pdf", b""), "u/pdf/a.pdf"))
    assert http.calls == []


def test_upload_rejects_oversized_file_without_network():
    """Test oversized files are rejected before any request."""
    service, http = make_service(make_response(200, {}))
    with pytest.raises(FileTooLargeError):
        asyncio.run(service.upload_file(pdf_document(51 * 1024 * 1024), "u/pdf/a.pdf"))
    assert http.calls == []


def test_upload_retries_server_errors_and_reports_retries():
    """Test server errors are retried and reported."""
    service, http = make_service(
        make_response(503, {"message": "Service Unavailable"}, reason="Service Unavailable"),
        make_response(200, {}),
    )
    retries = []

    asyncio.run(service.upload_file(pdf_document(), "u/pdf/a.pdf", on_retry=retries.append))

    assert len(http.calls) == 2
    assert retries[0]["attempt"] == 1
    assert retries[0]["max_retries"] == 3
    assert retries[0]["will_retry"] is True


def test_upload_gives_up_after_max_retries():
    """Test uploads give up after the retry limit."""
    service, http = make_service(requests.ConnectionError("connection refused"))
    with pytest.raises(TransportError):
        asyncio.run(service.upload_file(pdf_document(), "u/pdf/a.pdf", max_retries=3))
    assert len(http.calls) == 3


@pytest.mark.parametrize(
    "status_code, body, expected",
    [
        (403, {"message": "new row violates row-level security policy"}, AccessDeniedError),
        (400, {"statusCode": "409", "error": "Duplicate", "message": "The resource already exists"}, ConflictError),
        (413, {"message": "Payload too large"}, FileTooLargeError),
        (400, {"message": "Invalid key"}, StorageError),
    ],
)
def test_upload_client_errors_are_not_retried(status_code, body, expected):
    """Test client errors map to domain errors without retries."""
    service, http = make_service(make_response(status_code, body))
    with pytest.raises(expected):
        asyncio.run(service.upload_file(pdf_document(), "u/pdf/a.pdf"))
    assert len(http.calls) == 1


def test_upload_runs_health_probe_unless_skipped():
    """Test the pre-upload health probe can be skipped."""
    service, _ = make_service(make_response(200, {}))
    probes = []

    async def probe():
        probes.append(True)
        return False

    service.health_probe = probe
    asyncio.run(service.upload_file(pdf_document(), "u/pdf/a.pdf"))
    asyncio.run(service.upload_file(pdf_document(), "u/pdf/b.pdf", skip_health_check=True))
    assert probes == [True]


def test_public_url_needs_no_request():
    """Test public URLs are built locally."""
    service, http = make_service(make_response(200, {}))
    url = asyncio.run(service.get_file_url("u/image/a.png", bucket="resume-images"))
    assert url == f"{BASE_URL}/storage/v1/object/public/resume-images/u/image/a.png"
    assert http.calls == []


def test_signed_url():
    """Test signed URL generation."""
    service, http = make_service(make_response(200, {"signedURL": "/object/sign/resumes/u/pdf/a.pdf?token=abc"}))
    url = asyncio.run(service.get_file_url("u/pdf/a.pdf", bucket="resumes", signed=True, expires_in=600))
    assert url == f"{BASE_URL}/storage/v1/object/sign/resumes/u/pdf/a.pdf?token=abc"
    assert http.calls[0]["json"] == {"expiresIn": 600}


def test_delete_missing_file_counts_as_deleted():
    """Test deleting a missing blob succeeds."""
    service, http = make_service(make_response(404, {"message": "Object not found"}))
    asyncio.run(service.delete_file("u/pdf/gone.pdf", bucket="resumes"))
    assert http.calls[0]["method"] == "DELETE"
    assert http.calls[0]["json"] == {"prefixes": ["u/pdf/gone.pdf"]}


def test_download_file_returns_bytes():
    """Test downloading a blob."""
    response = make_response(200)
    response._content = b"%PDF-1.7"
    service, _ = make_service(response)
    assert asyncio.run(service.download_file("u/pdf/a.pdf")) == b"%PDF-1.7"


def test_list_files_sends_prefix_and_sort():
    """Test listing sends prefix, limit and sort."""
    service, http = make_service(make_response(200, [{"name": "a.pdf"}]))
    files = asyncio.run(service.list_files("user-123/pdf", bucket="resumes", limit=10))
    assert files == [{"name": "a.pdf"}]
    body = http.calls[0]["json"]
    assert body["prefix"] == "user-123/pdf"
    assert body["limit"] == 10
    assert body["sortBy"] == {"column": "name", "order": "asc"}


def test_file_exists():
    """Test existence checks."""
    service, _ = make_service(make_response(200, [{"name": "a.pdf"}]))
    assert asyncio.run(service.file_exists("user-123/pdf/a.pdf")) is True

    service, _ = make_service(make_response(200, [{"name": "other.pdf"}]))
    assert asyncio.run(service.file_exists("user-123/pdf/a.pdf")) is False

    service, _ = make_service(make_response(403, {"message": "denied"}))
    assert asyncio.run(service.file_exists("user-123/pdf/a.pdf")) is False


def test_get_file_metadata():
    """Test reading blob metadata."""
    entry = {"name": "a.pdf", "updated_at": "2024-01-01T00:00:00Z", "metadata": {"size": 2048, "mimetype": "application/pdf"}}
    service, _ = make_service(make_response(200, [entry]))
    metadata = asyncio.run(service.get_file_metadata("user-123/pdf/a.pdf"))
    assert metadata["size"] == 2048
    assert metadata["content_type"] == "application/pdf"
    assert metadata["last_modified"] == "2024-01-01T00:00:00Z"

    service, _ = make_service(make_response(200, []))
    with pytest.raises(FileNotFoundInStorageError):
        asyncio.run(service.get_file_metadata("user-123/pdf/a.pdf"))


def test_list_buckets():
    """Test listing buckets."""
    service, http = make_service(make_response(200, [{"name": "resumes"}]))
    assert asyncio.run(service.list_buckets()) == [{"name": "resumes"}]
    assert http.calls[0]["url"] == f"{BASE_URL}/storage/v1/bucket"
