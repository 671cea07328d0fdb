import asyncio
import logging
import random
import re
import string
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests

from atspect.core.config import settings
from atspect.core.exceptions import (
    AccessDeniedError,
    AppException,
    ConflictError,
    FileNotFoundInStorageError,
    FileTooLargeError,
    InvalidFileError,
    StorageError,
    TransportError,
)
from atspect.core.resilience import is_retryable_error, retry_with_backoff, run_in_thread, with_timeout
from atspect.services.pdf_processor import UploadedDocument

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]


def _sanitize_filename(filename: str) -> str:
    clean = re.sub(r"[^a-zA-Z0-9.-]", "_", filename)
    clean = re.sub(r"_{2,}", "_", clean)
    return clean.strip("_").lower()


def generate_file_path(user_id: str, filename: str, kind: str = "resume") -> str:
    """Build `{user_id}/{kind}/{epoch_ms}_{suffix}_{filename}` for a new blob."""
    if not user_id or not filename:
        raise ValueError("user_id and filename are required for file path generation")
    timestamp = int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{user_id}/{kind}/{timestamp}_{suffix}_{_sanitize_filename(filename)}"


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


class StorageService:
    """
    Blob storage client for the hosted backend's storage REST API.

    Every call is pushed to a worker thread, time-boxed and, where the
    operation allows it, retried with exponential backoff.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http: Optional[requests.Session] = None,
        client_info: str = settings.backend.client_info,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http = http or requests.Session()
        # Sent per request; the session may be shared with clients that talk to other hosts.
        self.auth_headers = {
            "Authorization": f"Bearer {api_key}",
            "apikey": api_key,
            "x-client-info": client_info,
        }
        self._sleep = sleep
        # Wired by the container once the health service exists.
        self.health_probe: Optional[Callable[[], Awaitable[bool]]] = None

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _url(self, *parts: str) -> str:
        return "/".join([f"{self.base_url}/storage/v1", *[p.strip("/") for p in parts]])

    def _send(self, method: str, url: str, timeout: float, error_code: str,
              headers: Optional[Dict[str, str]] = None, **kwargs) -> requests.Response:
        try:
            response = self.http.request(
                method, url, timeout=timeout, headers={**self.auth_headers, **(headers or {})}, **kwargs
            )
        except requests.Timeout as e:
            raise TransportError(f"Storage request timed out: {e}", error_code="OPERATION_TIMEOUT") from e
        except requests.ConnectionError as e:
            raise TransportError(f"Network connection failed: {e}") from e

        if response.status_code >= 400:
            raise self._classify(response, error_code)
        return response

    @staticmethod
    def _classify(response: requests.Response, error_code: str) -> AppException:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("message") or body.get("error") or response.reason or "Unknown storage error"
        # The storage API reports some failures as HTTP 400 with the real status in the body.
        status = str(body.get("statusCode") or response.status_code)

        if status in {"401", "403"}:
            return AccessDeniedError(f"Permission denied: {message}")
        if status == "404" or "not found" in str(message).lower():
            return FileNotFoundInStorageError(f"File not found: {message}")
        if status == "409" or body.get("error") == "Duplicate" or "already exists" in str(message).lower():
            return ConflictError("File already exists. Enable overwrite or use a different name.")
        if status == "413":
            return FileTooLargeError(f"File too large: {message}")
        retryable = response.status_code >= 500 or response.status_code == 429
        return StorageError(
            f"Storage request failed ({response.status_code}): {message}",
            error_code=error_code,
            retryable=retryable,
            details={"status_code": response.status_code},
        )

    async def _call(self, method: str, url: str, *, timeout: float, error_code: str,
                    message: str, **kwargs) -> requests.Response:
        return await with_timeout(
            run_in_thread(self._send, method, url, timeout, error_code, settle_timeout=timeout, **kwargs),
            timeout,
            message,
        )

    async def _retrying(self, operation, max_retries: int, on_retry=None):
        return await retry_with_backoff(
            operation,
            max_attempts=max_retries,
            base_delay=1.0,
            max_delay=10.0,
            factor=2.0,
            on_retry=on_retry,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def upload_file(
        self,
        document: UploadedDocument,
        path: str,
        *,
        bucket: str = settings.backend.resume_bucket,
        timeout: float = 120.0,
        cache_control: str = "3600",
        upsert: bool = False,
        max_retries: int = 3,
        on_progress: Optional[ProgressCallback] = None,
        on_retry: Optional[ProgressCallback] = None,
        skip_health_check: bool = False,
    ) -> str:
        """Upload a document and return its stored path."""
        if document is None or document.size == 0:
            raise InvalidFileError("Invalid file provided")
        max_mb = settings.upload.storage_max_size_mb
        if document.size > max_mb * 1024 * 1024:
            raise FileTooLargeError(f"File too large. Maximum size is {max_mb}MB")

        logger.info(f"Starting file upload: {bucket}/{path} ({_format_size(document.size)}, {document.content_type})")
        started = time.perf_counter()

        if not skip_health_check and self.health_probe is not None:
            try:
                healthy = await with_timeout(
                    self.health_probe(), settings.health.probe_timeout, "Health check timeout"
                )
                if not healthy:
                    logger.warning("Storage health check failed, proceeding with upload anyway")
            except Exception as e:
                logger.warning(f"Health check error, proceeding with upload anyway: {e}")

        def _report_retry(attempt: int, error: BaseException, delay: float) -> None:
            if on_progress:
                on_progress({
                    "stage": "retrying",
                    "attempt": attempt,
                    "progress": 0,
                    "message": f"Retrying upload in {delay:.1f}s...",
                })
            if on_retry:
                on_retry({
                    "attempt": attempt,
                    "max_retries": max_retries,
                    "error": str(error),
                    "will_retry": True,
                })

        async def _attempt(attempt: int) -> str:
            if on_progress:
                on_progress({
                    "stage": "uploading",
                    "attempt": attempt,
                    "progress": 0,
                    "message": f"Uploading... (attempt {attempt}/{max_retries})",
                })
            response = await self._call(
                "POST",
                self._url("object", bucket, path),
                timeout=timeout,
                error_code="UPLOAD_FAILED",
                message=f"Upload timeout after {timeout:g}s",
                data=document.content,
                headers={
                    "Content-Type": document.content_type or "application/pdf",
                    "cache-control": f"max-age={cache_control}",
                    "x-upsert": "true" if upsert else "false",
                },
            )
            if on_progress:
                on_progress({
                    "stage": "complete",
                    "attempt": attempt,
                    "progress": 100,
                    "message": "Upload completed successfully",
                })
            return path

        stored = await self._retrying(_attempt, max_retries, on_retry=_report_retry)
        logger.info(f"File uploaded successfully: {stored} ({time.perf_counter() - started:.2f}s)")
        return stored

    async def get_file_url(
        self,
        path: str,
        *,
        bucket: str = settings.backend.resume_bucket,
        signed: bool = False,
        expires_in: int = 3600,
        timeout: float = 10.0,
        max_retries: int = 2,
    ) -> str:
        if not signed:
            return self._url("object", "public", bucket, path)

        async def _attempt(attempt: int) -> str:
            logger.debug(f"Getting signed URL (attempt {attempt}): {bucket}/{path}")
            response = await self._call(
                "POST",
                self._url("object", "sign", bucket, path),
                timeout=timeout,
                error_code="URL_GENERATION_FAILED",
                message=f"URL generation timeout after {timeout:g}s",
                json={"expiresIn": expires_in},
            )
            signed_url = (response.json() or {}).get("signedURL")
            if not signed_url:
                raise StorageError("Failed to generate file URL", error_code="URL_GENERATION_FAILED", retryable=False)
            return f"{self.base_url}/storage/v1{signed_url}"

        return await self._retrying(_attempt, max_retries)

    async def download_file(
        self,
        path: str,
        *,
        bucket: str = settings.backend.resume_bucket,
        timeout: float = 60.0,
        max_retries: int = 3,
        on_progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        async def _attempt(attempt: int) -> bytes:
            logger.debug(f"Downloading file (attempt {attempt}): {bucket}/{path}")
            if on_progress:
                on_progress({"stage": "downloading", "attempt": attempt, "progress": 0})
            response = await self._call(
                "GET",
                self._url("object", bucket, path),
                timeout=timeout,
                error_code="DOWNLOAD_FAILED",
                message=f"Download timeout after {timeout:g}s",
            )
            if on_progress:
                on_progress({"stage": "complete", "attempt": attempt, "progress": 100})
            return response.content

        return await self._retrying(_attempt, max_retries)

    async def delete_file(
        self,
        path: str,
        *,
        bucket: str = settings.backend.resume_bucket,
        timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Delete a blob. A missing blob counts as deleted."""
        async def _attempt(attempt: int) -> None:
            logger.debug(f"Deleting file (attempt {attempt}): {bucket}/{path}")
            try:
                await self._call(
                    "DELETE",
                    self._url("object", bucket),
                    timeout=timeout,
                    error_code="DELETE_FAILED",
                    message=f"Delete timeout after {timeout:g}s",
                    json={"prefixes": [path]},
                )
            except FileNotFoundInStorageError:
                logger.debug(f"Delete target already absent: {bucket}/{path}")

        await self._retrying(_attempt, max_retries)
        logger.info(f"File deleted: {bucket}/{path}")

    async def list_files(
        self,
        folder: str = "",
        *,
        bucket: str = settings.backend.resume_bucket,
        limit: int = 100,
        offset: int = 0,
        sort_by: Optional[Dict[str, str]] = None,
        search: Optional[str] = None,
        timeout: float = 20.0,
    ) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {
            "prefix": folder,
            "limit": limit,
            "offset": offset,
            "sortBy": sort_by or {"column": "name", "order": "asc"},
        }
        if search:
            body["search"] = search
        try:
            response = await self._call(
                "POST",
                self._url("object", "list", bucket),
                timeout=timeout,
                error_code="LIST_FAILED",
                message=f"File list timeout after {timeout:g}s",
                json=body,
            )
        except Exception as e:
            logger.error(f"List files failed for {bucket}/{folder}: {e}")
            raise
        files = response.json() or []
        logger.debug(f"Found {len(files)} files in {bucket}/{folder}")
        return files

    async def _find(self, path: str, bucket: str, timeout: float) -> Optional[Dict[str, Any]]:
        folder, _, filename = path.rpartition("/")
        entries = await self.list_files(folder, bucket=bucket, search=filename, timeout=timeout)
        return next((entry for entry in entries if entry.get("name") == filename), None)

    async def file_exists(
        self,
        path: str,
        *,
        bucket: str = settings.backend.resume_bucket,
        timeout: float = 15.0,
        max_retries: int = 2,
    ) -> bool:
        async def _attempt(attempt: int) -> bool:
            try:
                return await self._find(path, bucket, timeout) is not None
            except Exception as e:
                if not is_retryable_error(e):
                    logger.debug(f"Existence check for {bucket}/{path} answered False: {e}")
                    return False
                raise

        return await self._retrying(_attempt, max_retries)

    async def get_file_metadata(
        self,
        path: str,
        *,
        bucket: str = settings.backend.resume_bucket,
        timeout: float = 15.0,
    ) -> Dict[str, Any]:
        try:
            entry = await self._find(path, bucket, timeout)
        except Exception as e:
            logger.error(f"Get file metadata failed for {bucket}/{path}: {e}")
            raise
        if entry is None:
            raise FileNotFoundInStorageError("File not found")
        metadata = entry.get("metadata") or {}
        return {
            **entry,
            "name": entry.get("name"),
            "size": metadata.get("size", 0),
            "last_modified": entry.get("updated_at"),
            "content_type": metadata.get("mimetype"),
        }

    async def list_buckets(self, timeout: float = 5.0) -> List[Dict[str, Any]]:
        response = await self._call(
            "GET",
            self._url("bucket"),
            timeout=timeout,
            error_code="HEALTH_CHECK_FAILED",
            message="Storage health check timed out",
        )
        return response.json() or []
