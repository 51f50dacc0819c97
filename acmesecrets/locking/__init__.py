#!/usr/bin/env python3
#
# acmesecrets/locking/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-hostname leases shared by every controller replica."""

from .lease import (
	CONTENTION_ERRORS,
	DEFAULT_LEASE_TTL,
	LeaseLocker,
	LockAmbiguousError,
	LockContendedError,
	LockError,
	LockHeldError,
	LockStoreError,
)
from .lockset import LockSet, LockSetError

__all__ = [
	"CONTENTION_ERRORS",
	"DEFAULT_LEASE_TTL",
	"LeaseLocker",
	"LockAmbiguousError",
	"LockContendedError",
	"LockError",
	"LockHeldError",
	"LockSet",
	"LockSetError",
	"LockStoreError",
]
