"""Helper utilities.

This module centralises common helper functions such as creating a
configured HTTP session and applying retry policies to network calls.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

import requests
from requests import Response
from tenacity import (after_log, retry, retry_if_exception_type,
                      stop_after_attempt, wait_exponential)

from .config import HTTP_TIMEOUT_SECONDS, USER_AGENT


logger = logging.getLogger(__name__)


def get_http_session(user_agent: Optional[str] = None) -> requests.Session:
    """Return a new HTTP session with sensible defaults.

    The session sets a realistic User-Agent header.  Caller is responsible
    for closing the session or letting it be garbage collected.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": user_agent or USER_AGENT,
            "Accept": "application/json, text/html, application/xml;q=0.9, */*;q=0.8",
        }
    )
    return session


class HTTPError(Exception):
    """Raised when an HTTP request fails after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(HTTPError):
    """The target resource does not exist (HTTP 404). Never retried."""


class RetryableHTTPError(HTTPError):
    """Server-side or rate-limit failure (5xx, 429) worth another attempt."""


def _raise_for_status(resp: Response) -> None:
    code = resp.status_code
    if code == 404:
        raise NotFoundError(f"Not found: {resp.url}", status_code=code)
    if code >= 500 or code == 429:
        raise RetryableHTTPError(f"Server returned status {code}", status_code=code)
    if code >= 400:
        raise HTTPError(f"Client error {code} for {resp.url}", status_code=code)


def retryable_request(
    attempts: int = 5,
) -> Callable[[Callable[..., Response]], Callable[..., Response]]:
    """Decorator factory to apply retry logic to HTTP calls.

    The decorated function must accept a `requests.Session` as its first
    argument, followed by URL and optional kwargs, and return a
    `requests.Response`.  Retries are attempted for network errors,
    HTTP 429 and HTTP errors (status >= 500), up to `attempts` tries with
    exponential back-off between 1 and 10 seconds.  Every call gets the
    configured timeout unless the caller passes one.
    """

    def decorator(method: Callable[..., Response]) -> Callable[..., Response]:
        @retry(
            reraise=True,
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=(
                retry_if_exception_type(requests.RequestException)
                | retry_if_exception_type(RetryableHTTPError)
            ),
            after=after_log(logger, logging.WARNING),
        )
        def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
            kwargs.setdefault("timeout", HTTP_TIMEOUT_SECONDS)
            response = method(session, url, **kwargs)
            _raise_for_status(response)
            return response

        return wrapper

    return decorator


__all__ = [
    "get_http_session",
    "retryable_request",
    "HTTPError",
    "NotFoundError",
    "RetryableHTTPError",
]
