"""Shared HTTP plumbing for the provider mail clients."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote, urljoin

from attachment_zipper.archive import NamedEntry
from attachment_zipper.retry import DEFAULT_MAX_ATTEMPTS, with_retry

T = TypeVar("T")

DEFAULT_MIME_TYPE = "application/octet-stream"


class MailAPIError(RuntimeError):
    """Raised when a provider API call returns an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class AttachmentInfo:
    attachment_id: str
    filename: str
    message_id: str
    mime_type: str = DEFAULT_MIME_TYPE
    size: int = 0


class MailClient:
    """Base class for provider clients.

    Subclasses implement ``search_messages``, ``get_message_attachments`` and
    ``download_attachment``, issuing each remote call through ``_call`` so it
    is covered by the retry policy.
    """

    provider = ""

    def __init__(
        self,
        session: Any,
        base_url: str,
        timeout_seconds: int = 30,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.sleep = sleep

    def search_messages(self, query: str) -> List[str]:
        raise NotImplementedError

    def get_message_attachments(self, message_id: str) -> List[AttachmentInfo]:
        raise NotImplementedError

    def download_attachment(self, message_id: str, attachment_id: str, filename: str) -> NamedEntry:
        raise NotImplementedError

    def _call(self, context: str, operation: Callable[[], T]) -> T:
        return with_retry(operation, context, max_attempts=self.max_attempts, sleep=self.sleep)

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _request(
        self,
        method: str,
        path_or_url: str,
        params: Optional[Dict[str, Any]] = None,
        absolute_url: bool = False,
    ):
        url = path_or_url if absolute_url else self._build_url(path_or_url)
        response = self.session.request(
            method=method,
            url=url,
            params=params,
            headers=self._headers(),
            timeout=self.timeout_seconds,
        )
        if response.status_code >= 400:
            raise MailAPIError(_extract_api_error(self.provider, response), status_code=response.status_code)
        return response

    def _request_json(
        self,
        method: str,
        path_or_url: str,
        params: Optional[Dict[str, Any]] = None,
        absolute_url: bool = False,
    ) -> Dict[str, Any]:
        response = self._request(method, path_or_url, params=params, absolute_url=absolute_url)
        if response.status_code == 204 or not response.content:
            return {}

        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type.lower():
            raise MailAPIError(
                f"Expected JSON response but got content type '{content_type}'",
                status_code=response.status_code,
            )
        return response.json()

    def _build_url(self, path: str) -> str:
        return urljoin(self.base_url + "/", path.lstrip("/"))


def quote_segment(value: str) -> str:
    return quote(str(value), safe="")


def _extract_api_error(provider: str, response: Any) -> str:
    label = {"gmail": "Gmail", "outlook": "Graph"}.get(provider, "Mail")
    prefix = f"{label} API request failed with status {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        body = (response.text or "").strip()
        if body:
            return f"{prefix}: {body[:500]}"
        return prefix

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        code = error.get("status") or error.get("code")
        message = error.get("message")
        if isinstance(code, str) and message:
            return f"{prefix}: {code} - {message}"
        if message:
            return f"{prefix}: {message}"
    elif isinstance(error, str):
        description = payload.get("error_description")
        return f"{prefix}: {error} - {description}" if description else f"{prefix}: {error}"

    return prefix
