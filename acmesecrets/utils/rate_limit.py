#!/usr/bin/env python3
#
# acmesecrets/utils/rate_limit.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rate limits for the public challenge responder (slowapi)."""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# CA validators retry from several vantage points; keep this generous
RATE_LIMIT_CHALLENGE = "120/minute"
RATE_LIMIT_STATUS = "30/minute"

limiter = Limiter(key_func=get_remote_address)

__all__ = [
	"RATE_LIMIT_CHALLENGE",
	"RATE_LIMIT_STATUS",
	"limiter",
]
