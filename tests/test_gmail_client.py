import base64

import pytest

from attachment_zipper.gmail_client import GmailClient, decode_base64url, extract_attachments
from attachment_zipper.mail_api import AttachmentInfo, MailAPIError
from attachment_zipper.retry import InvalidRequestError, NotFoundError
from tests.fakes import FakeResponse, FakeSession, recording_sleep


def make_client(*responses):
    session = FakeSession(list(responses))
    sleep = recording_sleep()
    return GmailClient(session, sleep=sleep), session, sleep


def encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


class TestSearchMessages:
    def test_returns_ids_from_single_page(self):
        client, session, _ = make_client(
            FakeResponse(payload={"messages": [{"id": "m1"}, {"id": "m2"}], "resultSizeEstimate": 2})
        )

        assert client.search_messages("has:attachment") == ["m1", "m2"]
        call = session.calls[0]
        assert call["method"] == "GET"
        assert call["url"] == "https://gmail.googleapis.com/gmail/v1/users/me/messages"
        assert call["params"] == {"q": "has:attachment", "maxResults": 100}

    def test_follows_page_tokens(self):
        client, session, _ = make_client(
            FakeResponse(payload={"messages": [{"id": "m1"}], "nextPageToken": "page-2"}),
            FakeResponse(payload={"messages": [{"id": "m2"}, {"threadId": "no-id"}]}),
        )

        assert client.search_messages("from:a@example.com") == ["m1", "m2"]
        assert "pageToken" not in session.calls[0]["params"]
        assert session.calls[1]["params"]["pageToken"] == "page-2"

    def test_no_matches(self):
        client, _, _ = make_client(FakeResponse(payload={"resultSizeEstimate": 0}))

        assert client.search_messages("nothing") == []

    def test_bad_query_is_invalid_request(self):
        client, _, _ = make_client(
            FakeResponse(400, payload={"error": {"code": 400, "message": "Invalid query", "status": "INVALID_ARGUMENT"}})
        )

        with pytest.raises(InvalidRequestError) as exc_info:
            client.search_messages("from:")

        assert str(exc_info.value).startswith('Searching messages with query "from:": Invalid request - ')
        assert "INVALID_ARGUMENT - Invalid query" in str(exc_info.value)

    def test_rate_limit_is_retried(self):
        client, session, sleep = make_client(
            FakeResponse(429, payload={"error": {"code": 429, "message": "Rate limit"}}),
            FakeResponse(payload={"messages": [{"id": "m1"}]}),
        )

        assert client.search_messages("q") == ["m1"]
        assert len(session.calls) == 2
        assert sleep.delays == [1.0]


class TestGetMessageAttachments:
    def test_multipart_message(self):
        client, session, _ = make_client(
            FakeResponse(
                payload={
                    "id": "m1",
                    "payload": {
                        "mimeType": "multipart/mixed",
                        "filename": "",
                        "body": {"size": 0},
                        "parts": [
                            {"mimeType": "text/plain", "filename": "", "body": {"size": 12, "data": "aGVsbG8"}},
                            {
                                "mimeType": "application/pdf",
                                "filename": "invoice.pdf",
                                "body": {"attachmentId": "att-1", "size": 2048},
                            },
                            {
                                "mimeType": "multipart/alternative",
                                "filename": "",
                                "body": {},
                                "parts": [
                                    {
                                        "mimeType": "image/png",
                                        "filename": "logo.png",
                                        "body": {"attachmentId": "att-2", "size": 512},
                                    }
                                ],
                            },
                        ],
                    },
                }
            )
        )

        attachments = client.get_message_attachments("m1")

        assert attachments == [
            AttachmentInfo("att-1", "invoice.pdf", "m1", "application/pdf", 2048),
            AttachmentInfo("att-2", "logo.png", "m1", "image/png", 512),
        ]
        assert session.calls[0]["url"].endswith("/users/me/messages/m1")
        assert session.calls[0]["params"] == {"format": "full"}

    def test_single_part_message(self):
        client, _, _ = make_client(
            FakeResponse(
                payload={
                    "id": "m2",
                    "payload": {
                        "mimeType": "application/zip",
                        "filename": "bundle.zip",
                        "body": {"attachmentId": "att-9", "size": 99},
                    },
                }
            )
        )

        assert client.get_message_attachments("m2") == [
            AttachmentInfo("att-9", "bundle.zip", "m2", "application/zip", 99)
        ]

    def test_deleted_message_is_not_found(self):
        client, session, sleep = make_client(FakeResponse(404, payload={"error": {"code": 404, "message": "Not Found"}}))

        with pytest.raises(NotFoundError) as exc_info:
            client.get_message_attachments("gone")

        assert str(exc_info.value) == "Fetching message gone: Resource not found (may have been deleted)"
        assert len(session.calls) == 1
        assert sleep.delays == []


class TestExtractAttachments:
    def test_missing_or_empty_parts(self):
        assert extract_attachments(None, "m") == []
        assert extract_attachments([], "m") == []

    def test_skips_parts_without_attachment_id_or_filename(self):
        parts = [
            {"filename": "inline.txt", "body": {"size": 3, "data": "YWJj"}},
            {"filename": "", "body": {"attachmentId": "att-1"}},
            {"filename": "kept.bin", "body": {"attachmentId": "att-2"}},
        ]

        assert extract_attachments(parts, "m") == [
            AttachmentInfo("att-2", "kept.bin", "m", "application/octet-stream", 0)
        ]


class TestDownloadAttachment:
    def test_decodes_base64url_payload(self):
        raw = b"\xfb\xff\xfe binary \x00 data??>>"
        client, session, _ = make_client(FakeResponse(payload={"size": len(raw), "data": encode(raw)}))

        entry = client.download_attachment("m1", "att-1", "blob.bin")

        assert entry.name == "blob.bin"
        assert entry.payload == raw
        assert session.calls[0]["url"].endswith("/messages/m1/attachments/att-1")

    def test_missing_data_is_an_error(self):
        client, _, _ = make_client(FakeResponse(payload={"size": 0}))

        with pytest.raises(MailAPIError) as exc_info:
            client.download_attachment("m1", "att-1", "blob.bin")

        assert str(exc_info.value) == 'No data in attachment "blob.bin" from message m1'

    def test_forbidden_surfaces_original_error(self):
        client, session, _ = make_client(
            FakeResponse(403, payload={"error": {"code": 403, "message": "Forbidden", "status": "PERMISSION_DENIED"}})
        )

        with pytest.raises(MailAPIError) as exc_info:
            client.download_attachment("m1", "att-1", "blob.bin")

        assert exc_info.value.status_code == 403
        assert str(exc_info.value) == "Gmail API request failed with status 403: PERMISSION_DENIED - Forbidden"
        assert len(session.calls) == 1

    def test_plain_text_error_body(self):
        client, _, _ = make_client(FakeResponse(418, content=b"teapot", content_type="text/plain"))

        with pytest.raises(MailAPIError) as exc_info:
            client.download_attachment("m1", "att-1", "blob.bin")

        assert str(exc_info.value) == "Gmail API request failed with status 418: teapot"


def test_decode_base64url_handles_missing_padding():
    assert decode_base64url("aGVsbG8") == b"hello"
    assert decode_base64url("_-8") == b"\xff\xef"
