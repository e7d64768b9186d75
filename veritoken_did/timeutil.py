"""Timestamp helpers. All timestamps are UTC ISO-8601 strings ending in "Z"."""

from datetime import datetime, timedelta, timezone
from typing import Union

from .exceptions import MalformedInput

_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(_FORMAT)


def utc_now() -> str:
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: Union[str, datetime]) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (AttributeError, ValueError) as e:
            raise MalformedInput(f"Invalid timestamp: {value!r}") from e
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def advance(previous: str) -> str:
    """Current time, strictly later than `previous`."""
    now = datetime.now(timezone.utc)
    last = parse_iso(previous)
    if now <= last:
        now = last + timedelta(microseconds=1)
    return to_iso(now)
