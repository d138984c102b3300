"""Decoding of Pub/Sub push envelopes carrying Gmail notifications."""

import base64
import binascii
import json
from typing import Any

from mailwatch.exceptions import MalformedNotificationError

from .models import PushNotification


def _decode_data(data: str) -> dict[str, Any]:
    # Pub/Sub uses standard base64 but some relays re-encode url-safe
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.b64decode(padded, altchars=b"-_", validate=False)
        decoded = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MalformedNotificationError(f"message.data is not base64 JSON ({e})") from e
    if not isinstance(decoded, dict):
        raise MalformedNotificationError("message.data must decode to a JSON object")
    return decoded


def parse_push_envelope(envelope: Any) -> PushNotification:
    """Extract the Gmail notification from a Pub/Sub push body.

    Expected shape::

        {"message": {"data": "<base64 {emailAddress, historyId}>",
                     "messageId": "..."},
         "subscription": "projects/.../subscriptions/..."}

    Args:
        envelope: Parsed JSON body of the push request.

    Returns:
        PushNotification with a lowercased address and string history id.

    Raises:
        MalformedNotificationError: If any required part is missing or invalid.
    """
    if not isinstance(envelope, dict):
        raise MalformedNotificationError("envelope must be a JSON object")
    message = envelope.get("message")
    if not isinstance(message, dict):
        raise MalformedNotificationError("missing message")
    data = message.get("data")
    if not isinstance(data, str) or not data:
        raise MalformedNotificationError("missing message.data")

    payload = _decode_data(data)
    email_address = payload.get("emailAddress")
    history_id = payload.get("historyId")
    if not isinstance(email_address, str) or "@" not in email_address:
        raise MalformedNotificationError("emailAddress missing or invalid")
    if isinstance(history_id, bool) or not isinstance(history_id, (str, int)):
        raise MalformedNotificationError("historyId missing or invalid")
    history_id = str(history_id).strip()
    if not history_id.isdigit():
        raise MalformedNotificationError(f"historyId {history_id!r} is not numeric")

    return PushNotification(
        email_address=email_address.strip().lower(),
        history_id=history_id,
        pubsub_message_id=message.get("messageId") or message.get("message_id"),
        subscription=envelope.get("subscription"),
    )
