"""Shared HTTP helpers used by the remote installation sources.

The registry, mirror and OCI sources all fetch small JSON documents and
stream package archives. This module owns timeouts, retry with exponential
backoff, and a short-lived response cache so those sources only deal with
protocol details. Failures are reported through a status code of 0 rather
than exceptions, letting each caller decide whether a failure is transient
for its protocol.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

import requests

from constants import Constants
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, str], str]

# Statuses worth another attempt; anything else is returned to the caller as-is.
_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class _ResponseCache:
    """TTL cache of successful GET responses, shared by worker threads."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[Response, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(url: str, headers: Optional[Dict[str, str]]) -> str:
        header_part = str(sorted(headers.items())) if headers else ""
        return f"GET:{url}:{header_part}"

    def get(self, key: str) -> Optional[Response]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            response, stored_at = entry
            if time.time() - stored_at >= Constants.HTTP_CACHE_TTL_SEC:
                del self._entries[key]
                return None
            return response

    def put(self, key: str, response: Response) -> None:
        with self._lock:
            self._entries[key] = (response, time.time())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_cache = _ResponseCache()


def clear_cache() -> None:
    """Drop every cached response."""
    _cache.clear()


def _trace(message: str, event: str, target: str, **fields: Any) -> None:
    if is_debug_enabled(logger):
        logger.debug(
            message,
            extra=extra_context(event=event, component="http_client", target=target, **fields),
        )


def robust_get(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    **kwargs: Any
) -> Response:
    """GET ``url`` with timeout, retries and caching.

    Returns:
        Tuple of (status_code, headers_dict, body_text). A status code of 0
        means no usable response was received after all retries; the text
        then describes the last failure.
    """
    key = _ResponseCache.key(url, headers)
    target = safe_url(url)

    cached = _cache.get(key)
    if cached is not None:
        _trace("HTTP cache hit", "cache_hit", target, action="GET")
        return cached

    failure = "no attempts made"
    for attempt in range(1, Constants.HTTP_RETRY_MAX + 1):
        if attempt > 1:
            time.sleep(Constants.HTTP_RETRY_BASE_DELAY_SEC * (2 ** (attempt - 2)))
        _trace("HTTP request", "http_request", target, action="GET", attempt=attempt)
        with Timer() as t:
            try:
                response = requests.get(url, timeout=Constants.REQUEST_TIMEOUT, headers=headers, **kwargs)
            except requests.Timeout:
                failure = "timeout"
                _trace("HTTP timeout", "http_exception", target, outcome="timeout", attempt=attempt)
                continue
            except requests.RequestException as exc:
                failure = str(exc)
                _trace("HTTP request exception", "http_exception", target,
                       outcome="request_exception", attempt=attempt)
                continue

        if response.status_code in _RETRYABLE_STATUS:
            failure = f"HTTP {response.status_code}"
            _trace("HTTP retryable status", "http_response", target, outcome="retry",
                   status_code=response.status_code, attempt=attempt)
            continue

        result = (response.status_code, dict(response.headers), response.text)
        if response.status_code < 400:
            _cache.put(key, result)
        _trace("HTTP response", "http_response", target, outcome="success",
               status_code=response.status_code, duration_ms=t.duration_ms())
        return result

    return 0, {}, f"Request failed after {Constants.HTTP_RETRY_MAX} attempts: {failure}"


def get_json(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    **kwargs: Any
) -> Tuple[int, Dict[str, str], Optional[Any]]:
    """GET ``url`` and decode a JSON body.

    The third element is None unless the status is 200 and the body is valid
    JSON.
    """
    status_code, response_headers, text = robust_get(url, headers=headers, **kwargs)
    if status_code != 200 or not text:
        return status_code, response_headers, None
    try:
        return status_code, response_headers, json.loads(text)
    except json.JSONDecodeError:
        _trace("JSON decode error", "parse", safe_url(url), action="get_json",
               outcome="json_decode_error", status_code=status_code)
        return status_code, response_headers, None


def download_to_file(
    url: str,
    dest_path: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> str:
    """Stream ``url`` into ``dest_path`` and return the SHA-256 hex digest.

    Raises:
        requests.RequestException: on connection failures or non-2xx status.
    """
    digest = hashlib.sha256()
    with Timer() as t:
        with requests.get(url, headers=headers, stream=True, timeout=Constants.REQUEST_TIMEOUT) as response:
            response.raise_for_status()
            with open(dest_path, "wb") as fh:
                for chunk in response.iter_content(chunk_size=Constants.DOWNLOAD_CHUNK_BYTES):
                    if chunk:
                        fh.write(chunk)
                        digest.update(chunk)
    _trace("HTTP download complete", "http_download", safe_url(url), action="GET",
           outcome="success", duration_ms=t.duration_ms())
    return digest.hexdigest()
