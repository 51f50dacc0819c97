#!/usr/bin/env python3
#
# acmesecrets/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time utilities."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

# Injectable clock returning Unix time in nanoseconds
Clock = Callable[[], int]

NS_PER_SECOND = 1_000_000_000
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ns() -> int:
	"""Return the current Unix time in nanoseconds."""
	return time.time_ns()


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
	"""Ensure a datetime is timezone-aware and in UTC.
	
	Raises:
		ValueError: If the datetime is naive (no timezone info)
	"""
	if dt is None:
		return None
	if dt.tzinfo is None:
		raise ValueError("Naive datetime not allowed - must be timezone-aware")
	return dt.astimezone(timezone.utc)


def datetime_to_ns(dt: datetime) -> int:
	"""Convert an aware datetime to Unix nanoseconds (exact, no float rounding)."""
	dt = ensure_utc(dt)
	delta = dt - _EPOCH
	return (delta.days * 86_400 + delta.seconds) * NS_PER_SECOND + delta.microseconds * 1_000


def ns_to_datetime(ns: int) -> datetime:
	"""Convert Unix nanoseconds to a UTC datetime (microsecond precision)."""
	return _EPOCH + timedelta(microseconds=ns // 1_000)


def format_expiry(ns: int) -> str:
	"""Render a nanosecond timestamp the way it is stored in labels."""
	return str(ns)


def parse_expiry(value: Optional[str]) -> Optional[int]:
	"""Parse a decimal nanosecond label value. Returns None when missing or corrupt."""
	if not value:
		return None
	try:
		return int(value, 10)
	except (TypeError, ValueError):
		return None
