# src/vmsync/clients/ingest.py
"""HTTP client for the ingestion platform's inventory upload API.

Requests are signed with HMAC-SHA256 over the method, path, payload
checksum, content type and timestamp, keyed by the API secret. The CSV
payload is sent as a multipart file; the operation header selects
append ("add") or replace semantics.

Transport failures and 5xx responses are retried with backoff. 4xx
responses fail immediately.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx
import structlog

from vmsync.clients.retry import RetryConfig, RetryManager
from vmsync.contracts.errors import ConnectivityError, UploadError

if TYPE_CHECKING:
    from vmsync.core.config import IngestSettings

logger = structlog.get_logger(__name__)

OPERATION_HEADER = "X-Tetration-Oper"
APPEND_OPERATION = "add"
REPLACE_OPERATION = "replace"
_USER_AGENT = "vmsync"


def sign_request(
    secret: str,
    *,
    method: str,
    path: str,
    checksum: str,
    content_type: str,
    timestamp: str,
) -> str:
    """Return the base64 HMAC-SHA256 signature for a request.

    The signed message is the newline-terminated concatenation of method,
    path, checksum, content type and timestamp.
    """
    message = f"{method}\n{path}\n{checksum}\n{content_type}\n{timestamp}\n"
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, ConnectivityError):
        return True
    if isinstance(error, UploadError):
        return error.status_code is not None and error.status_code >= 500
    return False


class IngestClient:
    """Upload inventory CSV batches to the ingestion platform.

    Example:
        client = IngestClient(
            "https://ingest.example.com",
            api_key="...",
            api_secret="...",
            verify=True,
        )
        status = client.upload(payload, append=True)
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str,
        api_secret: str,
        verify: bool = True,
        timeout: float = 30.0,
        api_prefix: str = "/openapi/v1",
        upload_path: str = "/assets/cmdb/upload",
        retry: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Platform root URL
            api_key: API key id, sent in the Id header
            api_secret: API secret used for request signing
            verify: Verify the platform's TLS certificate
            timeout: Per-request timeout in seconds
            api_prefix: Path prefix of the REST API
            upload_path: Upload endpoint below api_prefix
            retry: Retry policy (defaults to RetryConfig())
            transport: Optional httpx transport, used by tests
            clock: Optional UTC clock, used by tests
        """
        self._api_key = api_key
        self._api_secret = api_secret
        self._path = api_prefix.rstrip("/") + "/" + upload_path.lstrip("/")
        self._retry = RetryManager(retry or RetryConfig())
        self._clock = clock or (lambda: datetime.now(UTC))
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            verify=verify,
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": _USER_AGENT},
        )

    @classmethod
    def from_settings(cls, settings: IngestSettings, *, insecure: bool = False) -> IngestClient:
        """Build a client from validated settings."""
        return cls(
            settings.url,
            api_key=settings.api_key,
            api_secret=settings.api_secret,
            verify=not insecure,
            timeout=settings.timeout_seconds,
            api_prefix=settings.api_prefix,
            upload_path=settings.upload_path,
            retry=RetryConfig.from_settings(settings.retry),
        )

    def upload(self, payload: bytes, *, append: bool) -> str:
        """Upload a CSV payload.

        Args:
            payload: Serialized CSV batch
            append: True to add rows, False to replace the inventory

        Returns:
            Status text of the successful response

        Raises:
            ConnectivityError: If the platform stays unreachable after retries
            UploadError: If the platform rejects the upload
        """
        operation = APPEND_OPERATION if append else REPLACE_OPERATION

        def _on_retry(attempt: int, error: BaseException) -> None:
            logger.warning("Upload attempt failed, retrying", attempt=attempt, operation=operation, error=str(error))

        return self._retry.execute_with_retry(
            lambda: self._upload_once(payload, operation),
            is_retryable=_is_retryable,
            on_retry=_on_retry,
        )

    def _upload_once(self, payload: bytes, operation: str) -> str:
        request = self._client.build_request(
            "POST",
            self._path,
            files={"file": ("inventory.csv", payload, "text/csv")},
            headers={OPERATION_HEADER: operation},
        )
        self._sign(request)

        try:
            response = self._client.send(request)
        except httpx.TransportError as e:
            raise ConnectivityError(f"Cannot reach ingestion endpoint: {e}") from e

        if response.is_error:
            raise UploadError(
                f"Upload rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        status = f"{response.status_code} {response.reason_phrase}".strip()
        logger.debug("Upload accepted", operation=operation, status=status, bytes=len(payload))
        return status

    def _sign(self, request: httpx.Request) -> None:
        body = request.read()
        checksum = hashlib.sha256(body).hexdigest()
        content_type = request.headers.get("Content-Type", "")
        timestamp = self._clock().strftime("%Y-%m-%dT%H:%M:%S+0000")
        request.headers["Id"] = self._api_key
        request.headers["Timestamp"] = timestamp
        request.headers["X-Tetration-Cksum"] = checksum
        request.headers["Authorization"] = sign_request(
            self._api_secret,
            method=request.method,
            path=request.url.raw_path.decode("ascii"),
            checksum=checksum,
            content_type=content_type,
            timestamp=timestamp,
        )

    def close(self) -> None:
        """Release the connection pool. Idempotent."""
        self._client.close()
