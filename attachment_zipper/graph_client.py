"""Microsoft Graph client for Outlook mailboxes."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from attachment_zipper.archive import NamedEntry
from attachment_zipper.mail_api import (
    DEFAULT_MIME_TYPE,
    AttachmentInfo,
    MailClient,
    quote_segment,
)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
FILE_ATTACHMENT_TYPE = "#microsoft.graph.fileAttachment"
SEARCH_PAGE_SIZE = 50


class GraphClient(MailClient):
    provider = "outlook"

    def __init__(self, session: Any, auth: Any, base_url: str = GRAPH_BASE_URL, **kwargs: Any) -> None:
        super().__init__(session, base_url, **kwargs)
        self.auth = auth

    def search_messages(self, query: str) -> List[str]:
        message_ids: List[str] = []
        next_url: Optional[str] = "/me/messages"
        params: Dict[str, Any] = {
            "$search": _quote_search(query),
            "$select": "id",
            "$top": str(SEARCH_PAGE_SIZE),
        }

        while next_url:
            url, page_params = next_url, params
            payload = self._call(
                f'Searching messages with query "{query}"',
                lambda: self._request_json("GET", url, params=page_params, absolute_url=url.startswith("http")),
            )
            for message in payload.get("value", []):
                if message.get("id"):
                    message_ids.append(message["id"])

            # nextLink already carries the query string.
            next_url = payload.get("@odata.nextLink")
            params = {}

        return message_ids

    def get_message_attachments(self, message_id: str) -> List[AttachmentInfo]:
        payload = self._call(
            f"Fetching message {message_id}",
            lambda: self._request_json(
                "GET",
                f"/me/messages/{quote_segment(message_id)}/attachments",
                params={"$select": "id,name,contentType,size"},
            ),
        )

        attachments: List[AttachmentInfo] = []
        for item in payload.get("value", []):
            if item.get("@odata.type") != FILE_ATTACHMENT_TYPE:
                continue
            if not item.get("id") or not item.get("name"):
                continue
            attachments.append(
                AttachmentInfo(
                    attachment_id=item["id"],
                    filename=item["name"],
                    message_id=message_id,
                    mime_type=item.get("contentType") or DEFAULT_MIME_TYPE,
                    size=int(item.get("size") or 0),
                )
            )
        return attachments

    def download_attachment(self, message_id: str, attachment_id: str, filename: str) -> NamedEntry:
        response = self._call(
            f'Downloading attachment "{filename}" from message {message_id}',
            lambda: self._request(
                "GET",
                f"/me/messages/{quote_segment(message_id)}/attachments/{quote_segment(attachment_id)}/$value",
            ),
        )
        return NamedEntry(name=filename, payload=response.content)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self.auth.get_access_token()}"
        headers["Prefer"] = 'IdType="ImmutableId"'
        return headers


def _quote_search(query: str) -> str:
    return '"' + query.replace("\\", "\\\\").replace('"', '\\"') + '"'
