#!/usr/bin/env python3
#
# acmesecrets/locking/lockset.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""All-or-nothing acquisition of several leases at once."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Sequence

from ..models.entries import Lease
from .lease import CONTENTION_ERRORS, LeaseLocker

_log = logging.getLogger(__name__)


class LockSetError(Exception):
	"""Acquiring a set of leases failed; none of them is held.

	``errors`` holds every acquisition failure followed by any rollback
	(release) failure.
	"""

	def __init__(self, errors: Sequence[BaseException]) -> None:
		self.errors = list(errors)
		super().__init__("; ".join(str(err) for err in self.errors) or "lock acquisition failed")

	@property
	def contention_only(self) -> bool:
		"""True when every failure was routine contention between replicas."""
		return bool(self.errors) and all(isinstance(err, CONTENTION_ERRORS) for err in self.errors)


class LockSet:
	"""Fan-out/fan-in wrapper around a LeaseLocker."""

	def __init__(self, locker: LeaseLocker) -> None:
		self.locker = locker

	async def lock_all(self, names: Iterable[str]) -> list[Lease]:
		"""Acquire one lease per name concurrently.

		Returns every lease when all acquisitions succeed. Otherwise the
		leases that were acquired are released before LockSetError is raised,
		so the caller never holds a partial set.
		"""
		names = list(dict.fromkeys(names))
		if not names:
			return []

		results = await asyncio.gather(
			*(self.locker.acquire(name) for name in names),
			return_exceptions=True,
		)

		leases: list[Lease] = []
		errors: list[BaseException] = []
		for result in results:
			# CancelledError is collected too: roll back first, then propagate it
			if isinstance(result, BaseException):
				errors.append(result)
			else:
				leases.append(result)

		if not errors:
			_log.debug("LOCK acquired %d leases: %s", len(leases), ", ".join(names))
			return leases

		if leases:
			_log.info(
				"LOCK rolling back %d of %d leases after %d failures",
				len(leases), len(names), len(errors),
			)
			_, rollback_errors = await self.unlock_all(leases)
			errors.extend(rollback_errors)

		fatal = next((err for err in errors if not isinstance(err, Exception)), None)
		if fatal is not None:
			raise fatal
		raise LockSetError(errors)

	async def unlock_all(self, leases: Iterable[Lease]) -> tuple[list[Lease], list[Exception]]:
		"""Release every lease independently.

		Returns the released leases and the release failures; a failure does
		not stop the remaining releases.
		"""
		leases = list(leases)
		if not leases:
			return [], []

		results = await asyncio.gather(
			*(self.locker.release(lease) for lease in leases),
			return_exceptions=True,
		)

		released: list[Lease] = []
		errors: list[Exception] = []
		for lease, result in zip(leases, results):
			if isinstance(result, Exception):
				_log.warning("LOCK name=%s release failed: %s", lease.name, result)
				errors.append(result)
			elif isinstance(result, BaseException):
				raise result
			else:
				released.append(lease)
		return released, errors
