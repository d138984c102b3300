"""Parsing of Gmail message resources into MailMessage."""

import base64
import binascii
import re
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from html.parser import HTMLParser
from typing import Any, Optional

from .models import MailMessage

# Headers requested with format=metadata
METADATA_HEADERS = ["From", "To", "Subject", "Date", "Message-ID"]

_BLOCK_TAGS = frozenset({"p", "div", "br", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6"})
_HIDDEN_TAGS = frozenset({"script", "style", "head", "title"})


def extract_email_address(header_value: str) -> tuple[str, str]:
    """Split a From-style header into (display name, address).

    The display name falls back to the address when the header has none.
    """
    name, address = parseaddr(header_value or "")
    address = address.strip()
    return (name.strip() or address, address)


def decode_body_data(data: str) -> str:
    """Decode a Gmail body.data value (URL-safe base64, padding stripped)."""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


class _VisibleTextParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.chunks: list[str] = []
        self._hidden_depth = 0

    def handle_starttag(self, tag: str, attrs: list) -> None:
        tag = tag.lower()
        if tag in _HIDDEN_TAGS:
            self._hidden_depth += 1
        elif tag in _BLOCK_TAGS:
            self.chunks.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag.lower() in _HIDDEN_TAGS and self._hidden_depth:
            self._hidden_depth -= 1

    def handle_data(self, data: str) -> None:
        if not self._hidden_depth:
            self.chunks.append(data)


def html_to_text(html: str) -> str:
    """Visible text of an HTML body with block elements on their own lines."""
    parser = _VisibleTextParser()
    parser.feed(html)
    parser.close()
    text = re.sub(r"[ \t]+", " ", "".join(parser.chunks))
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def _first_part(payload: dict[str, Any], mime_type: str) -> Optional[str]:
    """Depth-first search for the first part of mime_type carrying inline data."""
    data = payload.get("body", {}).get("data")
    if data and payload.get("mimeType", "") == mime_type:
        return decode_body_data(data)
    for part in payload.get("parts", []):
        found = _first_part(part, mime_type)
        if found is not None:
            return found
    return None


def extract_body_text(payload: dict[str, Any]) -> str:
    """Plain-text body of a format=full payload.

    text/plain wins; an HTML-only message is flattened to text. Metadata
    payloads carry no body and yield "".
    """
    plain = _first_part(payload, "text/plain")
    if plain is not None:
        return plain.strip()
    html = _first_part(payload, "text/html")
    if html is not None:
        return html_to_text(html)
    return ""


def _sent_at(date_header: str, internal_date: Any) -> datetime:
    try:
        sent_at = parsedate_to_datetime(date_header)
    except (TypeError, ValueError):
        sent_at = None
    if sent_at is None:
        # internalDate is epoch milliseconds
        return datetime.fromtimestamp(int(internal_date or 0) / 1000, tz=timezone.utc)
    if sent_at.tzinfo is None:
        sent_at = sent_at.replace(tzinfo=timezone.utc)
    return sent_at


def parse_message(message: dict[str, Any]) -> MailMessage:
    """Build a MailMessage from a users.messages.get response.

    Works for both format="metadata" and format="full"; only the latter
    fills in body.
    """
    payload = message.get("payload", {})
    headers = {header["name"].lower(): header["value"] for header in payload.get("headers", [])}
    sender_name, sender_email = extract_email_address(headers.get("from", ""))
    recipients = [
        address.lower() for _, address in getaddresses([headers.get("to", "")]) if address
    ]

    return MailMessage(
        id=message["id"],
        thread_id=message.get("threadId", message["id"]),
        subject=headers.get("subject", "(No Subject)"),
        sender_name=sender_name,
        sender_email=sender_email.lower(),
        sent_at=_sent_at(headers.get("date", ""), message.get("internalDate")),
        recipients=recipients,
        label_ids=list(message.get("labelIds", [])),
        snippet=message.get("snippet", ""),
        body=extract_body_text(payload),
        rfc822_message_id=headers.get("message-id"),
    )
