"""Normalization of heterogeneous dataset rows into Thread / Message records.

Address fields arrive as a flat string, a ``{name, email}`` object, or a list
of either. They are parsed once into an explicit union
(``str | NameEmailPair | list[str | NameEmailPair]``) and each shape has its
own formatter.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from dateutil import parser as date_parser

from threadrag import hashing
from threadrag.db.models import Message, Thread

logger = logging.getLogger(__name__)

MAX_PARTICIPANTS = 500

_SENDER_FIELDS = ("sender", "from", "from_email", "fromName", "from_name")
_RECIPIENT_FIELDS = ("to", "cc", "bcc", "recipients")
_TIMESTAMP_FIELDS = ("timestamp", "date", "sent_at", "sentAt", "datetime")
_BODY_FIELDS = ("body", "text", "content", "message", "raw")

# RFC 2822 zone names (seconds east of UTC)
_TZINFOS: dict[str, int] = {
    "UT": 0,
    "UTC": 0,
    "GMT": 0,
    "Z": 0,
    "EST": -5 * 3600,
    "EDT": -4 * 3600,
    "CST": -6 * 3600,
    "CDT": -5 * 3600,
    "MST": -7 * 3600,
    "MDT": -6 * 3600,
    "PST": -8 * 3600,
    "PDT": -7 * 3600,
}

# Two fill-in dates: a field missing from the input shows up as a difference.
_FILL_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))


# ---------------------------------------------------------------------------
# Address shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NameEmailPair:
    """An address given as ``{"name": ..., "email": ...}``."""

    name: str | None = None
    email: str | None = None


AddressValue = Union[str, NameEmailPair, list[Union[str, NameEmailPair]]]


def _as_str(value: Any) -> str | None:
    """Scalar → string. Strings pass through; numbers and bools are stringified."""
    if isinstance(value, str):
        return value
    if isinstance(value, (bool, int, float)):
        return str(value)
    return None


def _as_pair(value: dict[str, Any]) -> NameEmailPair:
    return NameEmailPair(name=_as_str(value.get("name")), email=_as_str(value.get("email")))


def parse_address_field(value: Any) -> AddressValue | None:
    """Map a raw JSON address value onto the address union. Unknown shapes → None."""
    scalar = _as_str(value)
    if scalar is not None:
        return scalar
    if isinstance(value, dict):
        return _as_pair(value)
    if isinstance(value, list):
        items: list[str | NameEmailPair] = []
        for item in value:
            if isinstance(item, dict):
                items.append(_as_pair(item))
            else:
                s = _as_str(item)
                if s is not None:
                    items.append(s)
        return items
    return None


def format_string(value: str) -> str:
    return value.strip()


def format_pair(pair: NameEmailPair) -> str:
    """Combined ``"name email"`` form, skipping empty parts."""
    return " ".join(p.strip() for p in (pair.name, pair.email) if p and p.strip())


def format_list(items: list[str | NameEmailPair]) -> list[str]:
    out: list[str] = []
    for item in items:
        text = format_pair(item) if isinstance(item, NameEmailPair) else format_string(item)
        if text:
            out.append(text)
    return out


def format_address(value: AddressValue | None) -> list[str]:
    """Every non-empty address in *value*, in order."""
    if value is None:
        return []
    if isinstance(value, NameEmailPair):
        text = format_pair(value)
        return [text] if text else []
    if isinstance(value, list):
        return format_list(value)
    text = format_string(value)
    return [text] if text else []


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------


def normalize_messages(value: Any) -> list[dict[str, Any]]:
    """Accept an absent field, a JSON-encoded string or a list; return message objects."""
    if not value:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            logger.warning("messages field is not valid JSON; treating as empty")
            return []
    if isinstance(value, list):
        return [m for m in value if isinstance(m, dict) and m]
    return []


def extract_sender(msg: dict[str, Any]) -> str | None:
    """First non-empty sender.

    Flat strings win over ``{name, email}`` objects; an object is rendered as
    ``"name email"``.
    """
    parsed = [parse_address_field(msg.get(f)) for f in _SENDER_FIELDS]
    for value in parsed:
        if isinstance(value, str) and value.strip():
            return value.strip()
    for value in parsed:
        if isinstance(value, (NameEmailPair, list)):
            formatted = format_address(value)
            if formatted:
                return formatted[0]
    return None


def extract_recipients(msg: dict[str, Any]) -> list[str]:
    """Union of to / cc / bcc / recipients, trimmed and de-duplicated in first-seen order."""
    seen: dict[str, None] = {}
    for f in _RECIPIENT_FIELDS:
        for addr in format_address(parse_address_field(msg.get(f))):
            seen.setdefault(addr, None)
    return list(seen)


def parse_timestamp(raw: str) -> str | None:
    """Parse ISO-8601 / RFC 2822 style dates to an ISO-8601 UTC string, or None.

    Values without a full calendar date (e.g. ``"10:30"``) return None, so the
    result never depends on the day the row is ingested.
    """
    try:
        first, second = (
            date_parser.parse(raw, default=d, tzinfos=_TZINFOS) for d in _FILL_DEFAULTS
        )
    except (ValueError, OverflowError):
        return None
    if first != second:
        return None
    dt = first
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def extract_timestamp(msg: dict[str, Any]) -> tuple[str | None, str | None]:
    """Return ``(timestamp, timestamp_raw)``. The raw string is kept when parsing fails."""
    raw = None
    for f in _TIMESTAMP_FIELDS:
        raw = _as_str(msg.get(f))
        if raw is not None:
            break
    if raw is None or not raw.strip():
        return None, raw
    return parse_timestamp(raw.strip()), raw


def extract_body(msg: dict[str, Any]) -> str:
    for f in _BODY_FIELDS:
        body = _as_str(msg.get(f))
        if body is not None:
            return body
    return ""


def extract_subject(msg: dict[str, Any], thread_subject: str | None) -> str | None:
    subject = _as_str(msg.get("subject"))
    return subject if subject is not None else thread_subject


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


@dataclass
class NormalizedThread:
    """One dataset row mapped to a thread and its messages."""

    thread: Thread
    messages: list[Message] = field(default_factory=list)
    skipped: int = 0  # messages that degraded to an empty body


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value))
        except ValueError:
            return None
    return None


def normalize_message(
    msg: dict[str, Any],
    thread_key: str,
    order_index: int,
    thread_subject: str | None,
    store_raw: bool = False,
) -> Message:
    """Build a Message from one raw message object."""
    raw_json = hashing.canonical_json(msg)
    timestamp, timestamp_raw = extract_timestamp(msg)
    return Message(
        thread_key=thread_key,
        message_key=hashing.message_key(thread_key, order_index, raw_json),
        order_index=order_index,
        sender=extract_sender(msg),
        recipients=extract_recipients(msg),
        timestamp=timestamp,
        timestamp_raw=timestamp_raw,
        subject=extract_subject(msg, thread_subject),
        body=extract_body(msg),
        raw=raw_json if store_raw else None,
    )


def normalize_row(row: dict[str, Any], store_raw: bool = False) -> NormalizedThread:
    """Normalize one dataset row.

    Raises:
        ValueError: If the row has no ``thread_id`` or ``source_file``.
    """
    thread_id = _as_str(row.get("thread_id"))
    source_file = _as_str(row.get("source_file"))
    if not thread_id or not source_file:
        raise ValueError("row is missing thread_id or source_file")

    thread_subject = _as_str(row.get("subject"))
    thread_key = hashing.thread_key(source_file, thread_id)

    messages: list[Message] = []
    skipped = 0
    participants: dict[str, None] = {}
    for i, msg in enumerate(normalize_messages(row.get("messages"))):
        try:
            message = normalize_message(msg, thread_key, i, thread_subject, store_raw)
        except (TypeError, ValueError) as exc:
            # The ordinal is kept so later messages retain their identity.
            logger.warning("Message %d of thread %s failed to normalize: %s", i, thread_id, exc)
            skipped += 1
            message = Message(
                thread_key=thread_key,
                message_key=hashing.message_key(thread_key, i, repr(msg)),
                order_index=i,
                subject=thread_subject,
            )
        messages.append(message)
        if message.sender:
            participants.setdefault(message.sender, None)
        for r in message.recipients:
            participants.setdefault(r, None)

    thread = Thread(
        thread_key=thread_key,
        thread_id=thread_id,
        source_file=source_file,
        subject=thread_subject,
        message_count=_as_int(row.get("message_count")),
        participants=list(participants)[:MAX_PARTICIPANTS],
    )
    return NormalizedThread(thread=thread, messages=messages, skipped=skipped)
