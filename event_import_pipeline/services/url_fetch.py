"""
Remote import source fetching.

Downloads a scheduled import's source URL with timeout, size and MIME-type
limits, authentication headers and retries, then detects the file type of
the payload.
"""

import base64
import hashlib
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from ..core.config import FetchConfig
from ..core.exceptions import FetchError, FileTooLargeError, UnsupportedMimeTypeError
from ..utils.logger import get_logger
from .fault_tolerance import RetryPolicy, execute_with_retry
from .url_fetch_cache import CachedResponse, UrlFetchCache

logger = get_logger(__name__)

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS_MIME = "application/vnd.ms-excel"

CONTENT_TYPE_MAP = {
    "text/csv": ("text/csv", ".csv"),
    "application/csv": ("text/csv", ".csv"),
    XLS_MIME: (XLS_MIME, ".xls"),
    XLSX_MIME: (XLSX_MIME, ".xlsx"),
    "text/plain": ("text/plain", ".txt"),
    "application/json": ("application/json", ".json"),
}

EXTENSION_MAP = {
    ".csv": ("text/csv", ".csv"),
    ".xls": (XLS_MIME, ".xls"),
    ".xlsx": (XLSX_MIME, ".xlsx"),
    ".txt": ("text/plain", ".txt"),
    ".json": ("application/json", ".json"),
}

# 4xx responses worth retrying
RETRYABLE_CLIENT_STATUSES = {408, 429}


@dataclass
class DetectedFileType:
    mime_type: str
    file_extension: str


@dataclass
class FetchOptions:
    """Per-request options for ``fetch_with_retry``."""
    timeout_ms: int = 30000
    max_size: Optional[int] = None
    allowed_mime_types: Optional[List[str]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    auth: Optional[Dict[str, Any]] = None
    use_cache: bool = True
    bypass_cache: bool = False
    force_revalidate: bool = False
    user_id: Optional[str] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_config(cls, config: FetchConfig, **overrides) -> 'FetchOptions':
        options = cls(
            timeout_ms=config.timeout_ms,
            max_size=config.max_file_size,
            allowed_mime_types=list(config.allowed_mime_types),
            headers={"User-Agent": config.user_agent},
            retry_policy=RetryPolicy(
                max_retries=config.max_retries,
                initial_delay=config.retry_delay_ms / 1000.0,
                exponential_base=config.backoff_multiplier,
            ),
        )
        for key, value in overrides.items():
            setattr(options, key, value)
        options.timeout_ms = max(options.timeout_ms, config.min_timeout_ms)
        return options


@dataclass
class FetchResult:
    data: bytes
    mime_type: str
    file_extension: str
    size: int
    data_hash: str
    status: int
    attempts: int
    cache_status: Optional[str] = None


def calculate_data_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def detect_file_type(content_type: Optional[str], data: bytes, source_url: str) -> DetectedFileType:
    """
    Work out what kind of file was downloaded.

    Checks the Content-Type header, then the URL's extension, then magic
    bytes, falling back to CSV for text-like payloads.
    """
    if content_type:
        normalized = content_type.split(";")[0].strip().lower()
        if normalized in CONTENT_TYPE_MAP:
            return DetectedFileType(*CONTENT_TYPE_MAP[normalized])

    extension = os.path.splitext(urlsplit(source_url).path)[1].lower()
    if extension in EXTENSION_MAP:
        return DetectedFileType(*EXTENSION_MAP[extension])

    header = data[:8].hex()
    if header.startswith("504b0304"):
        return DetectedFileType(XLSX_MIME, ".xlsx")
    if header.startswith("d0cf11e0"):
        return DetectedFileType(XLS_MIME, ".xls")

    sample = data[:1000].decode("utf-8", errors="ignore")
    if "," in sample or "\t" in sample or "\n" in sample:
        return DetectedFileType("text/csv", ".csv")

    return DetectedFileType("application/octet-stream", ".bin")


def build_auth_headers(auth: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Headers for the supported auth types: ``bearer``, ``basic``, ``api-key``.

    ``customHeaders`` is merged in for any type.
    """
    if not auth:
        return {}

    headers: Dict[str, str] = {}
    auth_type = auth.get("type")
    if auth_type == "bearer" and auth.get("bearerToken"):
        headers["Authorization"] = f"Bearer {auth['bearerToken']}"
    elif auth_type == "basic" and auth.get("username"):
        credentials = f"{auth['username']}:{auth.get('password', '')}"
        headers["Authorization"] = "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")
    elif auth_type == "api-key" and auth.get("apiKey"):
        headers[auth.get("apiKeyHeader") or "X-API-Key"] = str(auth["apiKey"])

    headers.update(auth.get("customHeaders") or {})
    return headers


def validate_response(response: CachedResponse, options: FetchOptions, url: str) -> None:
    """Raise for error statuses and size or MIME-type policy violations."""
    if not response.ok:
        message = f"HTTP {response.status}: {response.status_text}" if response.status_text else f"HTTP {response.status}"
        retryable = response.status >= 500 or response.status in RETRYABLE_CLIENT_STATUSES
        raise FetchError(message, url=url, status_code=response.status, retryable=retryable)

    if options.max_size is not None and len(response.data) > options.max_size:
        raise FileTooLargeError(len(response.data), options.max_size, url=url)

    if options.allowed_mime_types:
        content_type = (response.header("content-type") or "").split(";")[0].strip().lower()
        allowed = [m.lower() for m in options.allowed_mime_types]
        if content_type and content_type not in allowed:
            raise UnsupportedMimeTypeError(content_type, options.allowed_mime_types, url=url)


async def fetch_with_retry(url: str, url_fetch_cache: UrlFetchCache,
                           options: Optional[FetchOptions] = None) -> FetchResult:
    """
    Fetch ``url`` with retries, honouring cache and policy options.

    Args:
        url: Source URL
        url_fetch_cache: Cache used for the request (also provides the client)
        options: Fetch options

    Returns:
        FetchResult with detected type and SHA-256 hash

    Raises:
        FetchError: After retries are exhausted, or at once for policy violations
    """
    options = options or FetchOptions()
    headers = {**build_auth_headers(options.auth), **options.headers}

    async def attempt_fetch(attempt: int) -> FetchResult:
        logger.info(f"Fetching URL (attempt {attempt}/{options.retry_policy.max_attempts})", extra={
            "url": url,
            "attempt": attempt,
            "use_cache": options.use_cache
        })
        response = await url_fetch_cache.fetch(
            url,
            headers=headers,
            user_id=options.user_id,
            bypass_cache=options.bypass_cache or not options.use_cache,
            force_revalidate=options.force_revalidate,
            timeout=options.timeout_ms / 1000.0,
            max_size=options.max_size,
        )
        validate_response(response, options, url)

        detected = detect_file_type(response.header("content-type"), response.data, url)
        return FetchResult(
            data=response.data,
            mime_type=detected.mime_type,
            file_extension=detected.file_extension,
            size=len(response.data),
            data_hash=calculate_data_hash(response.data),
            status=response.status,
            attempts=attempt,
            cache_status=response.cache_status,
        )

    return await execute_with_retry(attempt_fetch, options.retry_policy, operation="Fetch URL")
