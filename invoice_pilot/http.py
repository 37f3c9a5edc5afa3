"""Translate HTTP outcomes of the Google APIs into the pipeline's error kinds."""

from __future__ import annotations

import logging
from typing import Any, Callable

import requests
from requests import Response

from .errors import AuthError, RateLimited, RemoteFault, Transient

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


def _error_reasons(response: Response) -> set[str]:
    try:
        payload = response.json()
    except ValueError:
        return set()
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return set()
    return {item.get("reason", "") for item in error.get("errors") or [] if isinstance(item, dict)}


def _retry_after(response: Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_remote_error(response: Response, service: str) -> None:
    """Raise the matching ``RemoteError`` subclass for a failed response."""
    status = response.status_code
    if status < 400:
        return

    logger.error("%s request failed (%s): %s", service, status, response.text)
    message = f"{service} API error ({status})"
    if status == 401:
        raise AuthError(message, status)
    if status == 429 or (status == 403 and _error_reasons(response) & _RATE_LIMIT_REASONS):
        raise RateLimited(message, status, retry_after=_retry_after(response))
    if status >= 500:
        raise Transient(message, status)
    raise RemoteFault(message, status)


def send(service: str, call: Callable[..., Response], *args: Any, **kwargs: Any) -> Response:
    """Perform one request, mapping transport failures and error statuses."""
    kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
    try:
        response = call(*args, **kwargs)
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise Transient(f"{service} unreachable: {exc}") from exc
    raise_for_remote_error(response, service)
    return response


def read_json(response: Response, service: str) -> dict[str, Any]:
    """Body of a successful response as a JSON object."""
    try:
        payload = response.json()
    except ValueError as exc:
        raise RemoteFault(f"{service} returned a body that is not JSON", response.status_code) from exc
    if not isinstance(payload, dict):
        raise RemoteFault(f"{service} returned unexpected JSON", response.status_code)
    return payload
