"""Tests for dataset row normalization."""

from __future__ import annotations

import json

import pytest

from threadrag import hashing
from threadrag.ingest.normalize import (
    MAX_PARTICIPANTS,
    NameEmailPair,
    extract_body,
    extract_recipients,
    extract_sender,
    extract_subject,
    extract_timestamp,
    format_address,
    normalize_messages,
    normalize_row,
    parse_address_field,
    parse_timestamp,
)


def _row(messages, **extra):
    row = {"thread_id": "t1", "source_file": "emails.json", "subject": "Thread subject"}
    row["messages"] = messages
    row.update(extra)
    return row


# ---------------------------------------------------------------------------
# Address union
# ---------------------------------------------------------------------------

def test_parse_address_string():
    assert parse_address_field("a@x.com") == "a@x.com"


def test_parse_address_pair():
    assert parse_address_field({"name": "Ann", "email": "a@x.com"}) == NameEmailPair(
        "Ann", "a@x.com"
    )


def test_parse_address_mixed_list():
    parsed = parse_address_field(["a@x.com", {"email": "b@x.com"}, None, 7])
    assert parsed == ["a@x.com", NameEmailPair(None, "b@x.com"), "7"]


def test_parse_address_unknown_shape():
    assert parse_address_field(None) is None


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("  a@x.com ", ["a@x.com"]),
        (NameEmailPair("Ann", "a@x.com"), ["Ann a@x.com"]),
        (NameEmailPair(None, "a@x.com"), ["a@x.com"]),
        (NameEmailPair("", ""), []),
        (["a@x.com", NameEmailPair("Bo", None), "  "], ["a@x.com", "Bo"]),
        (None, []),
    ],
)
def test_format_address(value, expected):
    assert format_address(value) == expected


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------

def test_normalize_messages_accepts_json_string_list_and_absent():
    msgs = [{"text": "hi"}]
    assert normalize_messages(json.dumps(msgs)) == msgs
    assert normalize_messages(msgs) == msgs
    assert normalize_messages(None) == []
    assert normalize_messages("") == []


def test_normalize_messages_drops_non_objects_and_bad_json():
    assert normalize_messages([{"text": "a"}, "junk", {}, 3]) == [{"text": "a"}]
    assert normalize_messages("{not json") == []
    assert normalize_messages({"text": "a"}) == []


def test_extract_sender_prefers_flat_string():
    msg = {"from": {"name": "Ann", "email": "a@x.com"}, "from_email": "ann@x.com"}
    assert extract_sender(msg) == "ann@x.com"


def test_extract_sender_falls_back_to_object():
    assert extract_sender({"from": {"name": "Ann", "email": "a@x.com"}}) == "Ann a@x.com"


def test_extract_sender_missing():
    assert extract_sender({"text": "x"}) is None
    assert extract_sender({"from": "   "}) is None


def test_extract_recipients_union_dedup():
    msg = {
        "to": ["b@x.com", " c@x.com "],
        "cc": "b@x.com",
        "bcc": {"name": "Dee", "email": "d@x.com"},
        "recipients": ["c@x.com"],
    }
    assert extract_recipients(msg) == ["b@x.com", "c@x.com", "Dee d@x.com"]


def test_parse_timestamp_iso_and_rfc2822():
    assert parse_timestamp("2001-09-11T08:46:00-04:00") == "2001-09-11T12:46:00Z"
    assert parse_timestamp("Tue, 11 Sep 2001 08:46:00 -0400") == "2001-09-11T12:46:00Z"
    assert parse_timestamp("2001-09-11 12:46:00") == "2001-09-11T12:46:00Z"


def test_parse_timestamp_named_zones():
    assert parse_timestamp("Wed, 13 Mar 2002 10:00:00 PST") == "2002-03-13T18:00:00Z"
    assert parse_timestamp("Tue, 11 Sep 2001 08:46:00 EDT") == "2001-09-11T12:46:00Z"
    assert parse_timestamp("Mon, 4 Feb 2002 09:15:00 GMT") == "2002-02-04T09:15:00Z"
    assert parse_timestamp("4 Feb 2002 09:15:00 UT") == "2002-02-04T09:15:00Z"


@pytest.mark.parametrize("raw", ["10:30", "12", "March 2002", "2002", "Wednesday"])
def test_parse_timestamp_partial_date_is_none(raw):
    assert parse_timestamp(raw) is None


def test_extract_timestamp_partial_date_keeps_only_raw():
    assert extract_timestamp({"date": "10:30"}) == (None, "10:30")


def test_parse_timestamp_garbage():
    assert parse_timestamp("sometime last week-ish?") is None


def test_extract_timestamp_keeps_raw():
    assert extract_timestamp({"date": "not a date at all!"}) == (None, "not a date at all!")
    ts, raw = extract_timestamp({"sent_at": "2020-02-03T04:05:06Z"})
    assert ts == "2020-02-03T04:05:06Z"
    assert raw == "2020-02-03T04:05:06Z"
    assert extract_timestamp({}) == (None, None)


def test_extract_body_field_order():
    assert extract_body({"text": "t", "body": "b"}) == "b"
    assert extract_body({"content": "c", "raw": "r"}) == "c"
    assert extract_body({}) == ""


def test_extract_subject_falls_back_to_thread():
    assert extract_subject({"subject": "Re: x"}, "x") == "Re: x"
    assert extract_subject({}, "x") == "x"


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------

def test_row_with_json_string_messages():
    row = _row('[{"from":"a@x.com","to":["b@x.com"],"text":"hello"}]')
    result = normalize_row(row)

    assert len(result.messages) == 1
    msg = result.messages[0]
    assert msg.sender == "a@x.com"
    assert msg.recipients == ["b@x.com"]
    assert msg.body == "hello"
    assert msg.order_index == 0
    assert msg.subject == "Thread subject"


def test_row_keys_are_content_addressed():
    raw = {"from": "a@x.com", "text": "hello"}
    result = normalize_row(_row([raw]))
    tk = hashing.thread_key("emails.json", "t1")
    assert result.thread.thread_key == tk
    assert result.messages[0].message_key == hashing.message_key(tk, 0, raw)


def test_row_normalization_is_deterministic():
    row = _row([{"from": "a@x.com", "text": "x"}, {"from": "b@x.com", "text": "y"}])
    first = normalize_row(row)
    second = normalize_row(json.loads(json.dumps(row)))
    assert [m.message_key for m in first.messages] == [m.message_key for m in second.messages]


def test_row_participants_union_first_seen():
    row = _row(
        [
            {"from": "a@x.com", "to": ["b@x.com"], "text": "1"},
            {"from": "b@x.com", "to": ["a@x.com", "c@x.com"], "text": "2"},
        ]
    )
    assert normalize_row(row).thread.participants == ["a@x.com", "b@x.com", "c@x.com"]


def test_row_participants_capped():
    row = _row([{"from": "a@x.com", "to": [f"u{i}@x.com" for i in range(600)], "text": "x"}])
    assert len(normalize_row(row).thread.participants) == MAX_PARTICIPANTS


def test_row_message_count_coerced():
    assert normalize_row(_row([], message_count="3")).thread.message_count == 3
    assert normalize_row(_row([], message_count=None)).thread.message_count is None


def test_row_store_raw():
    raw = {"text": "hello", "from": "a@x.com"}
    assert normalize_row(_row([raw])).messages[0].raw is None
    stored = normalize_row(_row([raw]), store_raw=True).messages[0].raw
    assert json.loads(stored) == raw


@pytest.mark.parametrize("missing", ["thread_id", "source_file"])
def test_row_missing_identity_raises(missing):
    row = _row([])
    row[missing] = None
    with pytest.raises(ValueError, match="thread_id or source_file"):
        normalize_row(row)


def test_row_without_messages():
    result = normalize_row(_row(None))
    assert result.messages == []
    assert result.thread.participants == []
