"""HTTP utilities with retry and simple file-based caching."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path
from typing import Any

import requests
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from . import config as cfg

LOGGER = logging.getLogger(__name__)


class TransientHTTPError(Exception):
    """Raised when the upstream service indicates a retryable failure."""

    def __init__(self, message: str):
        super().__init__(message)
        self.retry_after: int | None = None  # Retry-After header value in seconds


def _hash_payload(*parts: Any) -> str:
    digest = sha256()
    for part in parts:
        digest.update(json.dumps(part, sort_keys=True, default=str).encode())
    return digest.hexdigest()


def _build_cache_path(
    prefix: str, *, method: str, url: str, params: Any, payload: Any
) -> Path:
    cache_key = _hash_payload(method.upper(), url, params, payload)
    return cfg.resolve_cache_path(prefix, cache_key)


def _load_cache(path: Path, ttl_seconds: float | None) -> Any | None:
    if not path.exists():
        return None
    if ttl_seconds is not None:
        age = time.time() - path.stat().st_mtime
        if age > ttl_seconds:
            return None
    with path.open("rb") as fh:
        return json.loads(fh.read().decode())


def _store_cache(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as fh:
        fh.write(json.dumps(payload).encode())


def _should_retry(status_code: int, retry_config=cfg.DEFAULT_RETRY_CONFIG) -> bool:
    return status_code in retry_config.status_forcelist


def build_session(default_headers: Mapping[str, str] | None = None) -> requests.Session:
    session = requests.Session()
    if default_headers:
        session.headers.update(default_headers)
    return session


@dataclass
class RequestOptions:
    prefix: str
    session: requests.Session
    method: str
    url: str
    params: Mapping[str, Any] | None = None
    json_body: Any | None = None
    headers: MutableMapping[str, str] | None = None
    ttl_seconds: float | None = 3600
    force_refresh: bool = False


def _retry_condition(exc: BaseException) -> bool:
    return isinstance(exc, TransientHTTPError)


def _parse_retry_after(response: requests.Response) -> int | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        seconds = int(raw)
    except (TypeError, ValueError):
        return None
    if seconds < 0 or seconds > 3600:
        LOGGER.warning(
            "Retry-After header seems unrealistic: %s seconds; using backoff", raw
        )
        return None
    return seconds


def _request_once(opts: RequestOptions) -> Any:
    try:
        response = opts.session.request(
            opts.method,
            opts.url,
            params=opts.params,
            json=opts.json_body,
            headers=opts.headers,
            timeout=(10, 120),  # (connect, read)
        )
    except requests.RequestException as exc:
        raise TransientHTTPError(f"Request failed: {exc}") from exc

    if _should_retry(response.status_code):
        error = TransientHTTPError(f"Status {response.status_code} for {opts.url}")
        if response.status_code == 429:
            error.retry_after = _parse_retry_after(response)
        raise error
    response.raise_for_status()
    try:
        return response.json()
    except ValueError as exc:
        raise RuntimeError(f"Non-JSON response from {opts.url}") from exc


def cached_json_request(opts: RequestOptions) -> Any:
    """Perform a JSON HTTP request with retry and caching."""
    cache_path = _build_cache_path(
        opts.prefix,
        method=opts.method,
        url=opts.url,
        params=opts.params,
        payload=opts.json_body,
    )
    if not opts.force_refresh:
        cached = _load_cache(cache_path, opts.ttl_seconds)
        if cached is not None:
            return cached

    retry_config = cfg.DEFAULT_RETRY_CONFIG
    _exponential_wait = wait_exponential_jitter(
        initial=retry_config.wait_min_seconds,
        max=retry_config.wait_max_seconds,
    )

    def _wait_with_retry_after(retry_state):
        exc = retry_state.outcome.exception()
        if isinstance(exc, TransientHTTPError) and exc.retry_after is not None:
            LOGGER.info(
                "Waiting %d seconds as specified by Retry-After header",
                exc.retry_after,
            )
            return exc.retry_after
        return _exponential_wait(retry_state)

    @retry(
        retry=retry_if_exception(_retry_condition),
        wait=_wait_with_retry_after,
        stop=stop_after_attempt(retry_config.max_attempts),
        reraise=True,
        before_sleep=lambda retry_state: LOGGER.info(
            "Retrying request (attempt %d/%d) - %s",
            retry_state.attempt_number,
            retry_config.max_attempts,
            str(retry_state.outcome.exception()) if retry_state.outcome else "unknown error",
        ),
    )
    def _execute() -> Any:
        return _request_once(opts)

    payload = _execute()
    _store_cache(cache_path, payload)
    return payload
