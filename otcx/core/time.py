"""
otcx/core/time.py

Clock helpers. The ledger speaks unix seconds; every deadline comparison
in otcx goes through now_unix() so tests can pin the clock.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], int]


def now_unix() -> int:
    """Current UTC time as integer unix seconds."""
    return int(datetime.now(timezone.utc).timestamp())


def resolve_now(now: Optional[int]) -> int:
    """Return `now` if given, else the wall clock."""
    return now_unix() if now is None else now


def iso_timestamp(unix_seconds: Optional[int]) -> str:
    """
    Render unix seconds as YYYY-MM-DDTHH:MM:SSZ. Empty string for None or 0,
    which the ledger uses for "never".
    """
    if not unix_seconds:
        return ""
    dt = datetime.fromtimestamp(unix_seconds, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
