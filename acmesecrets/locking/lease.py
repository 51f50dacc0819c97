#!/usr/bin/env python3
#
# acmesecrets/locking/lease.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Expiring leases on top of create-if-absent and fenced delete."""

from __future__ import annotations

import logging
from datetime import timedelta

from ..models.entries import LABEL_EXPIRY, Lease
from ..store.base import (
	AlreadyExistsError,
	FenceMismatchError,
	NotFoundError,
	SecretStore,
	StoreError,
)
from ..utils.time import NS_PER_SECOND, Clock, now_ns, parse_expiry

_log = logging.getLogger(__name__)

DEFAULT_LEASE_TTL = timedelta(seconds=30)


class LockError(Exception):
	"""Base class for lease acquisition and release failures."""

	def __init__(self, name: str, message: str) -> None:
		super().__init__(f"{name}: {message}")
		self.name = name


class LockHeldError(LockError):
	"""An unexpired lease already exists under the name."""

	def __init__(self, name: str, expiry_ns: int) -> None:
		super().__init__(name, f"existing lock is still valid, expires at {expiry_ns}")
		self.expiry_ns = expiry_ns


class LockContendedError(LockError):
	"""Another instance won the race to reclaim or recreate the lease."""


class LockAmbiguousError(LockError):
	"""The occupying lease vanished between create and fetch; retry later."""


class LockStoreError(LockError):
	"""The store failed while acquiring or releasing."""


# Failures that are routine under several controller replicas
CONTENTION_ERRORS = (LockHeldError, LockContendedError, LockAmbiguousError)


class LeaseLocker:
	"""Acquire and release per-name leases in one namespace.

	Correctness rests on two store properties only: ``create`` is atomic
	create-if-absent, and ``delete(labels=...)`` removes an entry only while
	its ``expiry`` label still holds the value observed by the caller. The
	``expiry`` value is therefore the fencing token of a lease.
	"""

	def __init__(
		self,
		store: SecretStore,
		namespace: str,
		*,
		ttl: timedelta = DEFAULT_LEASE_TTL,
		clock: Clock = now_ns,
	) -> None:
		if ttl <= timedelta(0):
			raise ValueError("lease ttl must be positive")
		self.store = store
		self.namespace = namespace
		self.ttl_ns = int(ttl.total_seconds() * NS_PER_SECOND)
		self._clock = clock

	def _new_lease(self, name: str) -> Lease:
		return Lease(name=name, namespace=self.namespace, expiry_ns=self._clock() + self.ttl_ns)

	async def _create(self, name: str) -> Lease:
		lease = self._new_lease(name)
		await self.store.create(lease.to_entry())
		return lease

	async def acquire(self, name: str) -> Lease:
		"""Acquire the lease ``name`` or raise a LockError."""
		try:
			lease = await self._create(name)
			_log.debug("LOCK name=%s acquired expiry=%d", name, lease.expiry_ns)
			return lease
		except AlreadyExistsError:
			pass
		except StoreError as exc:
			raise LockStoreError(name, f"create failed: {exc}") from exc

		try:
			existing = await self.store.get(name, self.namespace)
		except NotFoundError as exc:
			raise LockAmbiguousError(name, "lock was released while acquiring") from exc
		except StoreError as exc:
			raise LockStoreError(name, f"fetch failed: {exc}") from exc

		observed = existing.labels.get(LABEL_EXPIRY)
		expiry = parse_expiry(observed)
		now = self._clock()
		if expiry is not None and now < expiry:
			raise LockHeldError(name, expiry)

		# Abandoned (expired, or no usable expiry): reclaim with a fenced delete
		_log.info("LOCK name=%s reclaiming expired lease expiry=%s", name, observed)
		try:
			await self.store.delete(name, self.namespace, labels={LABEL_EXPIRY: observed})
		except (FenceMismatchError, NotFoundError) as exc:
			raise LockContendedError(name, f"lock is being reclaimed by another instance: {exc}") from exc
		except StoreError as exc:
			raise LockStoreError(name, f"reclaim failed: {exc}") from exc

		# Single retry; the expiry is recomputed for the new lease
		try:
			lease = await self._create(name)
		except AlreadyExistsError as exc:
			raise LockContendedError(name, "another instance has acquired the lock") from exc
		except StoreError as exc:
			raise LockStoreError(name, f"create after reclaim failed: {exc}") from exc
		_log.info("LOCK name=%s reclaimed expiry=%d", name, lease.expiry_ns)
		return lease

	async def release(self, lease: Lease) -> None:
		"""Release ``lease``.

		The delete is fenced on the lease's own expiry, so a lease that was
		reclaimed and replaced is left untouched. Releasing a lease that is
		already gone is not an error.
		"""
		try:
			await self.store.delete(lease.name, lease.namespace, labels=lease.fence)
		except NotFoundError:
			_log.debug("LOCK name=%s already released", lease.name)
		except FenceMismatchError:
			_log.info("LOCK name=%s was reclaimed by another holder, leaving it in place", lease.name)
		except StoreError as exc:
			raise LockStoreError(lease.name, f"release failed: {exc}") from exc
		else:
			_log.debug("LOCK name=%s released", lease.name)
