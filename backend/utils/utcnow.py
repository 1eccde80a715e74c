"""Naive UTC helpers.

``datetime.utcnow()`` is deprecated since Python 3.12. These wrappers produce
the **naive** UTC datetimes the persistence layer stores, and the UTC
calendar day the daily risk ledger is keyed on.
"""

from datetime import date, datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_today() -> date:
    """UTC calendar day used as the risk-ledger date key."""
    return datetime.now(timezone.utc).date()
