# shared/utils.py

import datetime
import secrets
import string
import time
from typing import Collection, Union

import pytz

from shared.errors import ValidationError

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_message_id(existing: Collection[str] = ()) -> str:
    """Millisecond timestamp plus a random base36 suffix, unique within `existing`."""
    while True:
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(5))
        msg_id = f"{int(time.time() * 1000)}{suffix}"
        if msg_id not in existing:
            return msg_id


def parse_send_at(value: Union[str, datetime.datetime]) -> datetime.datetime:
    """
    Parses an ISO-8601 timestamp into an aware UTC datetime.

    A trailing "Z" is accepted. Naive values are taken as UTC.
    Raises ValidationError for anything else.
    """
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        raw = (value or "").strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.datetime.fromisoformat(raw)
        except ValueError:
            raise ValidationError(f"sendAt must be an ISO 8601 timestamp, got {value!r}")

    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(pytz.UTC)
