#!/usr/bin/env python3
#
# acmesecrets/store/memory.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""In-process store backend (local development and tests)."""

from __future__ import annotations

import asyncio
import itertools
from typing import Mapping, Optional

from ..models.entries import CredentialEntry
from .base import (
	AlreadyExistsError,
	ConflictError,
	FenceMismatchError,
	NotFoundError,
	SecretStore,
	labels_match,
)


class MemorySecretStore(SecretStore):
	"""Dict-backed store with the same atomicity guarantees as the API server.

	Every operation runs under one asyncio lock, so create-if-absent and the
	fenced delete are atomic with respect to each other. Entries are copied
	on the way in and out; callers never share state with the store.
	"""

	def __init__(self) -> None:
		self._entries: dict[tuple[str, str], CredentialEntry] = {}
		self._lock = asyncio.Lock()
		self._versions = itertools.count(1)

	def _stamp(self, entry: CredentialEntry) -> CredentialEntry:
		stored = entry.copy()
		stored.resource_version = str(next(self._versions))
		self._entries[(entry.namespace, entry.name)] = stored
		return stored.copy()

	async def create(self, entry: CredentialEntry) -> CredentialEntry:
		async with self._lock:
			if (entry.namespace, entry.name) in self._entries:
				raise AlreadyExistsError(f"entry {entry.namespace}/{entry.name} already exists")
			return self._stamp(entry)

	async def get(self, name: str, namespace: str) -> CredentialEntry:
		async with self._lock:
			stored = self._entries.get((namespace, name))
			if stored is None:
				raise NotFoundError(f"entry {namespace}/{name} not found")
			return stored.copy()

	async def update(self, entry: CredentialEntry) -> CredentialEntry:
		async with self._lock:
			stored = self._entries.get((entry.namespace, entry.name))
			if stored is None:
				raise NotFoundError(f"entry {entry.namespace}/{entry.name} not found")
			if entry.resource_version and entry.resource_version != stored.resource_version:
				raise ConflictError(
					f"entry {entry.namespace}/{entry.name} changed "
					f"(have {entry.resource_version}, stored {stored.resource_version})"
				)
			return self._stamp(entry)

	async def delete(
		self,
		name: str,
		namespace: str,
		labels: Optional[Mapping[str, Optional[str]]] = None,
	) -> None:
		async with self._lock:
			stored = self._entries.get((namespace, name))
			if stored is None:
				raise NotFoundError(f"entry {namespace}/{name} not found")
			if not labels_match(stored.labels, labels):
				raise FenceMismatchError(f"entry {namespace}/{name} does not match {dict(labels or {})}")
			del self._entries[(namespace, name)]

	async def list(
		self,
		namespace: str,
		labels: Optional[Mapping[str, str]] = None,
	) -> list[CredentialEntry]:
		async with self._lock:
			return [
				entry.copy()
				for (ns, _), entry in sorted(self._entries.items())
				if ns == namespace and labels_match(entry.labels, labels)
			]

	def __len__(self) -> int:
		return len(self._entries)
