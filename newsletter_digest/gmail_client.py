from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Optional, Set

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from .config import LABEL_NAME, MAX_MESSAGES, Settings
from .errors import SourceError
from .models import RawEmail
from .operation_log import OperationLog
from .utils import parse_email_date

logger = logging.getLogger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
TOKEN_URI = "https://oauth2.googleapis.com/token"  # nosec B105


class GmailClient:
    def __init__(
        self,
        service: Any,
        oplog: Optional[OperationLog] = None,
        label_name: str = LABEL_NAME,
        max_messages: int = MAX_MESSAGES,
    ):
        self._service = service
        self._oplog = oplog or OperationLog()
        self._label_name = label_name
        self._max_messages = max_messages

    @classmethod
    def from_settings(cls, settings: Settings, oplog: Optional[OperationLog] = None) -> "GmailClient":
        oplog = oplog or OperationLog()
        try:
            service = build("gmail", "v1", credentials=_load_credentials(settings), cache_discovery=False)
        except (ValueError, GoogleAuthError) as exc:
            oplog.error("gmail_init", "Failed to initialize Gmail API", error=str(exc))
            raise SourceError(f"Gmail authentication failed: {exc}", cause=exc) from exc
        oplog.info("gmail_init", "Gmail API initialized successfully")
        return cls(service, oplog)

    def fetch_unprocessed(self, existing_ids: Set[str]) -> List[RawEmail]:
        """
        List messages under the newsletter label and return the ones not yet stored.

        Dedup is by Gmail message id only. Messages without an HTML part and
        messages that fail to load are skipped for this run.
        """
        try:
            label_id = self._find_label_id()
            if label_id is None:
                self._oplog.warning("gmail_fetch", f'Label "{self._label_name}" not found')
                return []

            response = (
                self._service.users()
                .messages()
                .list(userId="me", labelIds=[label_id], maxResults=self._max_messages)
                .execute()
            )
        except Exception as exc:  # noqa: BLE001
            self._oplog.error("gmail_fetch", "Failed to fetch emails", error=str(exc))
            raise SourceError(f"Gmail listing failed: {exc}", cause=exc) from exc

        messages = response.get("messages") or []
        if not messages:
            self._oplog.info("gmail_fetch", "No messages found")
            return []

        unprocessed = [m for m in messages if m.get("id") not in existing_ids]
        self._oplog.info("gmail_fetch", f"Found {len(unprocessed)} unprocessed messages")

        emails: List[RawEmail] = []
        for message in unprocessed:
            email = self._fetch_email(message["id"])
            if email is not None:
                emails.append(email)
        return emails

    def _find_label_id(self) -> Optional[str]:
        labels = self._service.users().labels().list(userId="me").execute()
        for label in labels.get("labels") or []:
            if label.get("name") == self._label_name:
                return label.get("id")
        return None

    def _fetch_email(self, message_id: str) -> Optional[RawEmail]:
        try:
            message = (
                self._service.users().messages().get(userId="me", id=message_id, format="full").execute()
            )
        except Exception as exc:  # noqa: BLE001
            self._oplog.error("gmail_fetch", f"Failed to fetch message {message_id}", error=str(exc))
            return None

        payload = message.get("payload") or {}
        headers = payload.get("headers") or []
        html_content = extract_html_content(payload)
        if not html_content:
            self._oplog.warning("gmail_fetch", f"No HTML content found for message {message_id}")
            return None

        return RawEmail(
            gmail_message_id=message_id,
            subject=_header(headers, "Subject"),
            sender=_header(headers, "From"),
            received_at=parse_email_date(_header(headers, "Date"), message.get("internalDate")),
            html_content=html_content,
        )


def extract_html_content(payload: Dict[str, Any]) -> Optional[str]:
    """Depth-first search over the MIME tree; the first text/html part with data wins."""
    stack: List[Dict[str, Any]] = [payload]
    while stack:
        part = stack.pop()
        if part.get("mimeType") == "text/html":
            decoded = _decode_base64url((part.get("body") or {}).get("data"))
            if decoded:
                return decoded
        children = part.get("parts") or []
        stack.extend(reversed(children))
    return None


def _decode_base64url(data: Optional[str]) -> Optional[str]:
    if not data:
        return None
    padding = "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(data + padding)
    except (binascii.Error, ValueError):
        logger.warning("Skipping MIME part with undecodable body")
        return None
    return raw.decode("utf-8", errors="replace")


def _header(headers: List[Dict[str, Any]], name: str) -> str:
    target = name.lower()
    for header in headers:
        if str(header.get("name", "")).lower() == target:
            return str(header.get("value", ""))
    return ""


def _load_credentials(settings: Settings) -> Credentials:
    try:
        client = json.loads(settings.gmail_credentials)
        token = json.loads(settings.gmail_token)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Gmail credentials are not valid JSON: {exc}") from exc

    # Accept both the raw client object and the "installed"/"web" wrapper Google downloads.
    client = client.get("installed") or client.get("web") or client
    creds = Credentials(
        token=token.get("access_token") or token.get("token"),
        refresh_token=token.get("refresh_token"),
        token_uri=client.get("token_uri") or TOKEN_URI,
        client_id=client.get("client_id"),
        client_secret=client.get("client_secret"),
        scopes=token.get("scopes") or str(token.get("scope", "")).split() or GMAIL_SCOPES,
    )
    if not creds.valid and creds.refresh_token:
        logger.info("Refreshing Gmail access token")
        creds.refresh(Request())
    return creds
