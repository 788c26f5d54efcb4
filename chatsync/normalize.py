"""
Extraction of candidate messages from gateway payloads.

The gateway owns these shapes and they vary between versions and event
types, so nothing here raises on missing or oddly typed fields: a missing
body becomes a placeholder, a missing timestamp becomes the server time,
and only a message without any usable counterparty is dropped.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from chatsync.domain import Direction, MessageRecord, MessageStatus, utcnow
from chatsync.utils import is_broadcast_jid, is_group_jid, jid_to_number

logger = logging.getLogger(__name__)

PLACEHOLDER_BODY = "no content"

_TEXT_PATHS = (
    ("message", "conversation"),
    ("message", "extendedTextMessage", "text"),
    ("message", "imageMessage", "caption"),
    ("message", "videoMessage", "caption"),
    ("message", "documentMessage", "caption"),
    ("message", "documentWithCaptionMessage", "message", "documentMessage", "caption"),
    ("message", "buttonsResponseMessage", "selectedDisplayText"),
    ("message", "listResponseMessage", "title"),
    ("message", "templateButtonReplyMessage", "selectedDisplayText"),
    ("message", "ephemeralMessage", "message", "conversation"),
    ("message", "ephemeralMessage", "message", "extendedTextMessage", "text"),
    ("body",),
    ("text",),
    ("content",),
)

# Opaque stand-ins for media without caption
_MEDIA_PLACEHOLDERS = (
    ("imageMessage", "[image]"),
    ("videoMessage", "[video]"),
    ("audioMessage", "[audio]"),
    ("documentMessage", "[document]"),
    ("stickerMessage", "[sticker]"),
    ("locationMessage", "[location]"),
    ("contactMessage", "[contact]"),
)

_STATUS_NAMES = {
    "error": MessageStatus.FAILED,
    "failed": MessageStatus.FAILED,
    "pending": MessageStatus.PENDING,
    "server_ack": MessageStatus.SENT,
    "sent": MessageStatus.SENT,
    "delivery_ack": MessageStatus.DELIVERED,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.DELIVERED,
    "played": MessageStatus.DELIVERED,
}

# Numeric ack levels used by the WhatsApp Web protocol
_STATUS_ACKS = {
    0: MessageStatus.FAILED,
    1: MessageStatus.PENDING,
    2: MessageStatus.SENT,
    3: MessageStatus.DELIVERED,
    4: MessageStatus.DELIVERED,
    5: MessageStatus.DELIVERED,
}


def get_nested(payload: Any, path: Iterable[str]) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first_text(payload: Dict[str, Any], paths) -> Optional[str]:
    for path in paths:
        value = get_nested(payload, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_body(payload: Dict[str, Any]) -> str:
    text = _first_text(payload, _TEXT_PATHS)
    if text:
        return text
    message = payload.get("message")
    if isinstance(message, dict):
        for key, placeholder in _MEDIA_PLACEHOLDERS:
            if key in message:
                return placeholder
    return PLACEHOLDER_BODY


def parse_timestamp(value: Any, now: Optional[datetime] = None) -> datetime:
    """
    Accept epoch seconds or milliseconds (numbers or digit strings),
    protobuf Long dicts ({"low": ..., "high": ...}) and ISO-8601 strings.
    Anything else falls back to ``now``.
    """
    fallback = now or utcnow()
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, dict):
        low = value.get("low")
        high = value.get("high") or 0
        if isinstance(low, int) and isinstance(high, int):
            value = (high << 32) + (low & 0xFFFFFFFF)
        else:
            return fallback
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return fallback
        if stripped.isdigit():
            value = int(stripped)
        else:
            try:
                parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            except ValueError:
                logger.debug(f"Unparseable timestamp {value!r}, using server time")
                return fallback
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000.0
        if seconds <= 0:
            return fallback
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return fallback
    return fallback


def map_gateway_status(value: Any) -> Optional[MessageStatus]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return _STATUS_ACKS.get(value)
    if isinstance(value, str):
        return _STATUS_NAMES.get(value.strip().lower())
    return None


def extract_counterparty(payload: Dict[str, Any], fallback_jid: Optional[str] = None) -> Optional[str]:
    """
    Phone number on the other side of the conversation, or None for
    groups, broadcasts and payloads without any address.
    """
    key = payload.get("key") if isinstance(payload.get("key"), dict) else {}
    candidates = [
        key.get("remoteJid"),
        payload.get("remoteJid"),
        payload.get("chatId"),
    ]
    from_me = _extract_from_me(payload)
    if from_me:
        candidates.extend([payload.get("to"), payload.get("number")])
    else:
        candidates.extend([payload.get("from"), payload.get("sender")])
    candidates.append(fallback_jid)

    for jid in candidates:
        if not jid:
            continue
        if is_group_jid(jid) or is_broadcast_jid(jid):
            return None
        if isinstance(jid, str) and jid.endswith("@lid"):
            # Privacy ids carry no phone number; the alternate address does
            alt = key.get("remoteJidAlt") or key.get("senderPn") or payload.get("senderPn")
            number = jid_to_number(alt) if alt else None
            if number:
                return number
            continue
        number = jid_to_number(jid)
        if number:
            return number
    return None


def _extract_from_me(payload: Dict[str, Any]) -> bool:
    key = payload.get("key")
    if isinstance(key, dict) and "fromMe" in key:
        return bool(key.get("fromMe"))
    if "fromMe" in payload:
        return bool(payload.get("fromMe"))
    direction = payload.get("direction")
    if isinstance(direction, str):
        return direction.strip().lower() in ("sent", "outgoing", "outbound")
    return False


def _extract_text_field(payload: Dict[str, Any], *paths) -> Optional[str]:
    for path in paths:
        value = get_nested(payload, path)
        if value is None or isinstance(value, (dict, list)):
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def candidate_from_gateway_message(
    connection_id: int,
    payload: Any,
    fallback_jid: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[MessageRecord]:
    """
    Build a merge candidate from one gateway message object.

    Returns None when the payload is not a dict or has no usable
    counterparty (group, broadcast, missing address).
    """
    if not isinstance(payload, dict):
        logger.warning(f"Skipping non-object gateway message: {type(payload).__name__}")
        return None

    counterparty = extract_counterparty(payload, fallback_jid)
    if counterparty is None:
        logger.debug("Skipping gateway message without a direct counterparty")
        return None

    direction = Direction.SENT if _extract_from_me(payload) else Direction.RECEIVED
    if direction == Direction.RECEIVED:
        status = MessageStatus.DELIVERED
    else:
        # Anything the gateway reports back was at least accepted by it
        reported = map_gateway_status(payload.get("status"))
        status = reported if reported in (MessageStatus.DELIVERED, MessageStatus.FAILED) else MessageStatus.SENT

    timestamp_value = payload.get("messageTimestamp")
    if timestamp_value is None:
        timestamp_value = payload.get("timestamp")
    if timestamp_value is None:
        timestamp_value = payload.get("date_time")

    return MessageRecord(
        connection_id=connection_id,
        counterparty_number=counterparty,
        direction=direction,
        body=extract_body(payload),
        status=status,
        timestamp=parse_timestamp(timestamp_value, now),
        message_id=_extract_text_field(payload, ("key", "id"), ("id",), ("messageId",), ("keyId",)),
        temp_id=_extract_text_field(payload, ("tempId",), ("temp_id",), ("key", "tempId")),
    )


def iter_event_messages(data: Any) -> List[Dict[str, Any]]:
    """Message objects carried by a webhook ``data`` field."""
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if not isinstance(data, dict):
        return []
    messages = data.get("messages")
    if isinstance(messages, list):
        return [item for item in messages if isinstance(item, dict)]
    return [data]


def normalize_event_name(value: Any) -> str:
    """'MESSAGES_UPSERT' and 'messages.upsert' both become 'messages.upsert'."""
    if not isinstance(value, str):
        return ""
    return value.strip().lower().replace("_", ".")
