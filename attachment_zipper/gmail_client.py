"""Gmail REST API client for attachment search and download."""

from __future__ import annotations

import base64
from typing import Any, Dict, Iterable, List, Optional

from attachment_zipper.archive import NamedEntry
from attachment_zipper.mail_api import (
    DEFAULT_MIME_TYPE,
    AttachmentInfo,
    MailAPIError,
    MailClient,
    quote_segment,
)

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
SEARCH_PAGE_SIZE = 100


class GmailClient(MailClient):
    provider = "gmail"

    def __init__(self, session: Any, base_url: str = GMAIL_BASE_URL, **kwargs: Any) -> None:
        super().__init__(session, base_url, **kwargs)

    def search_messages(self, query: str) -> List[str]:
        message_ids: List[str] = []
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"q": query, "maxResults": SEARCH_PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token

            payload = self._call(
                f'Searching messages with query "{query}"',
                lambda: self._request_json("GET", "/messages", params=params),
            )
            for message in payload.get("messages") or []:
                if message.get("id"):
                    message_ids.append(message["id"])

            page_token = payload.get("nextPageToken")
            if not page_token:
                return message_ids

    def get_message_attachments(self, message_id: str) -> List[AttachmentInfo]:
        message = self._call(
            f"Fetching message {message_id}",
            lambda: self._request_json(
                "GET",
                f"/messages/{quote_segment(message_id)}",
                params={"format": "full"},
            ),
        )

        payload = message.get("payload") or {}
        single = _attachment_from_part(payload, message_id)
        if single is not None:
            return [single]
        return extract_attachments(payload.get("parts"), message_id)

    def download_attachment(self, message_id: str, attachment_id: str, filename: str) -> NamedEntry:
        body = self._call(
            f'Downloading attachment "{filename}" from message {message_id}',
            lambda: self._request_json(
                "GET",
                f"/messages/{quote_segment(message_id)}/attachments/{quote_segment(attachment_id)}",
            ),
        )

        data = body.get("data")
        if not data:
            raise MailAPIError(f'No data in attachment "{filename}" from message {message_id}')
        return NamedEntry(name=filename, payload=decode_base64url(data))


def extract_attachments(parts: Optional[Iterable[Dict[str, Any]]], message_id: str) -> List[AttachmentInfo]:
    """Walk a MIME part tree depth-first and collect attachment parts."""
    attachments: List[AttachmentInfo] = []
    for part in parts or []:
        info = _attachment_from_part(part, message_id)
        if info is not None:
            attachments.append(info)
        if part.get("parts"):
            attachments.extend(extract_attachments(part["parts"], message_id))
    return attachments


def decode_base64url(data: str) -> bytes:
    # Gmail strips the padding.
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _attachment_from_part(part: Dict[str, Any], message_id: str) -> Optional[AttachmentInfo]:
    filename = part.get("filename")
    body = part.get("body") or {}
    attachment_id = body.get("attachmentId")
    if not filename or not attachment_id:
        return None
    return AttachmentInfo(
        attachment_id=attachment_id,
        filename=filename,
        message_id=message_id,
        mime_type=part.get("mimeType") or DEFAULT_MIME_TYPE,
        size=int(body.get("size") or 0),
    )
