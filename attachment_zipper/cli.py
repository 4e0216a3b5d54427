"""CLI entrypoint: search a mailbox and zip every matching attachment."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import requests
from google.auth.exceptions import GoogleAuthError

from attachment_zipper.archive import ArchiveWriteError, NamedEntry, build_archive, write_archive
from attachment_zipper.auth_manager import (
    AUTH_METHODS,
    PROVIDERS,
    AuthConfig,
    AuthConfigError,
    AuthError,
    DependencyError,
    build_auth_manager,
)
from attachment_zipper.gmail_client import GmailClient
from attachment_zipper.graph_client import GraphClient
from attachment_zipper.mail_api import AttachmentInfo, MailAPIError, MailClient
from attachment_zipper.retry import InvalidRequestError, NotFoundError, RetryPolicyError
from attachment_zipper.token_store import TokenStoreError

EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1
EXIT_AUTH_ERROR = 2
EXIT_API_ERROR = 3
EXIT_FS_ERROR = 4

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = "attachments.zip"
DEFAULT_MAX_MESSAGES = 100
PROGRESS_EVERY = 10

AUTH_ERRORS = (AuthConfigError, AuthError, DependencyError, TokenStoreError, GoogleAuthError)
API_ERRORS = (RetryPolicyError, MailAPIError, requests.RequestException)

EPILOG = """\
examples:
  attachment-zipper "from:example@gmail.com has:attachment"
  attachment-zipper "has:attachment larger:1M" -o large-files.zip
  attachment-zipper "subject:invoice has:attachment" --output invoices.zip
  attachment-zipper "invoice" --provider outlook

query syntax (gmail):
  from:sender@email.com    emails from a specific sender
  has:attachment           emails with attachments
  larger:5M                attachments larger than 5MB
  after:2024/01/01         emails after a date
  subject:keyword          emails with keyword in subject
"""


class CliArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_USER_ERROR, f"{self.prog}: error: {message}\n")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = CliArgumentParser(
        prog="attachment-zipper",
        description="Download every attachment from messages matching a search query into one ZIP file.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("query", nargs="?", default="", help="Mailbox search query")
    parser.add_argument(
        "-o",
        "--output",
        default=DEFAULT_OUTPUT,
        help=f"Output ZIP filename (default: {DEFAULT_OUTPUT})",
    )
    parser.add_argument("--provider", choices=PROVIDERS, default=None, help="Mail provider (default: gmail)")
    parser.add_argument("--profile", default=None, help="Token cache profile")
    parser.add_argument(
        "--max-messages",
        type=int,
        default=DEFAULT_MAX_MESSAGES,
        help=f"Stop after this many matching messages (default: {DEFAULT_MAX_MESSAGES})",
    )
    parser.add_argument("--auth-method", choices=AUTH_METHODS, default="browser")
    parser.add_argument("--no-browser", action="store_true", help="Print the login URL instead of opening it")
    parser.add_argument("--auth-status", action="store_true", help="Show cached login state and exit")
    parser.add_argument("--logout", action="store_true", help="Forget cached tokens for the profile and exit")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if args.max_messages <= 0:
        print("Error: --max-messages must be greater than 0", file=sys.stderr)
        return EXIT_USER_ERROR

    try:
        config = AuthConfig.from_env(provider_override=args.provider, profile_override=args.profile)
        config.method = args.auth_method
        config.open_browser = not args.no_browser
        manager = build_auth_manager(config)
    except (AuthConfigError, TokenStoreError) as err:
        print(f"Error: {err}", file=sys.stderr)
        return EXIT_USER_ERROR

    if args.logout:
        emit(manager.logout())
        return EXIT_SUCCESS

    if args.auth_status:
        emit(manager.status())
        return EXIT_SUCCESS

    if not args.query:
        print("Error: Search query is required", file=sys.stderr)
        print("Run with --help for usage information", file=sys.stderr)
        return EXIT_USER_ERROR

    print("Authenticating...")
    try:
        client = build_mail_client(config, manager)
    except AUTH_ERRORS + (requests.RequestException,) as err:
        print(f"Authentication failed: {err}", file=sys.stderr)
        return EXIT_AUTH_ERROR

    try:
        return download_to_zip(client, args.query, args.output, max_messages=args.max_messages)
    except AUTH_ERRORS as err:
        # Tokens are refreshed lazily, so login can still fail mid-run.
        print(f"\nAuthentication failed: {err}", file=sys.stderr)
        return EXIT_AUTH_ERROR
    except Exception as err:
        logger.debug("Unexpected failure during download", exc_info=True)
        print(f"\nUnexpected error: {err}", file=sys.stderr)
        return EXIT_API_ERROR


def build_mail_client(config: AuthConfig, manager: Any) -> MailClient:
    session = manager.authorize()
    if config.provider == "outlook":
        return GraphClient(session, auth=manager)
    return GmailClient(session)


def download_to_zip(
    client: MailClient,
    query: str,
    output: str,
    max_messages: int = DEFAULT_MAX_MESSAGES,
) -> int:
    print(f'Searching for messages matching: "{query}"')
    try:
        message_ids = client.search_messages(query)
    except InvalidRequestError as err:
        print(f"Invalid search query: {err}", file=sys.stderr)
        return EXIT_USER_ERROR
    except API_ERRORS as err:
        print(f"Search failed: {err}", file=sys.stderr)
        return EXIT_API_ERROR

    if not message_ids:
        print("No messages found matching your query.")
        return EXIT_SUCCESS

    print(f"Found {len(message_ids)} message(s)")
    if len(message_ids) > max_messages:
        print(f"Warning: Large number of messages found. Auto-limiting at {max_messages} messages.")
        message_ids = message_ids[:max_messages]

    print("Scanning messages for attachments...")
    attachments: List[AttachmentInfo] = []
    for index, message_id in enumerate(message_ids, start=1):
        try:
            attachments.extend(client.get_message_attachments(message_id))
        except NotFoundError:
            print(f"\nWarning: Message {message_id} was not found (may have been deleted), skipping")
            continue
        except API_ERRORS as err:
            print(f"\nFailed to get attachments from message {message_id}: {err}", file=sys.stderr)
            return EXIT_API_ERROR

        if index % PROGRESS_EVERY == 0 or index == len(message_ids):
            print(f"\rScanned {index}/{len(message_ids)} messages", end="", flush=True)
    print()

    if not attachments:
        print("No attachments found in matching messages.")
        return EXIT_SUCCESS

    total_size = sum(att.size for att in attachments)
    print(f"Found {len(attachments)} attachment(s) ({format_bytes(total_size)} total)")

    print("Downloading attachments...")
    files: List[NamedEntry] = []
    for index, att in enumerate(attachments, start=1):
        print(f"\rDownloading [{index}/{len(attachments)}]: {att.filename}\x1b[K", end="", flush=True)
        try:
            files.append(client.download_attachment(att.message_id, att.attachment_id, att.filename))
        except NotFoundError:
            print(f"\nWarning: Attachment {att.filename} was not found, skipping")
            continue
        except API_ERRORS as err:
            print(f"\nFailed to download {att.filename}: {err}", file=sys.stderr)
            return EXIT_API_ERROR
    print()

    print("Creating ZIP archive...")
    data = build_archive(files)

    try:
        path = write_archive(data, output)
    except ArchiveWriteError as err:
        print(f"Failed to write ZIP file: {err}", file=sys.stderr)
        return EXIT_FS_ERROR

    print(f"\nCreated {path} with {len(files)} file(s) ({format_bytes(len(data))})")
    return EXIT_SUCCESS


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def emit(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


if __name__ == "__main__":
    raise SystemExit(main())
