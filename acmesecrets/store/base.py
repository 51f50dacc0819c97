#!/usr/bin/env python3
#
# acmesecrets/store/base.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Store adapter contract for labeled, namespaced key-value records."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Mapping, Optional

from ..models.entries import CredentialEntry


class StoreError(Exception):
	"""Base class for store adapter failures."""


class NotFoundError(StoreError):
	"""No entry exists under the requested name."""


class AlreadyExistsError(StoreError):
	"""Create refused because the name is already occupied."""


class ConflictError(StoreError):
	"""Write refused because the entry changed since it was read."""


class FenceMismatchError(ConflictError):
	"""Fenced delete observed label values other than the expected ones."""


def labels_match(labels: Mapping[str, str], selector: Optional[Mapping[str, Optional[str]]]) -> bool:
	"""Equality-based label selector match. A ``None`` value requires the label to be absent."""
	if not selector:
		return True
	return all(labels.get(key) == value for key, value in selector.items())


class SecretStore(ABC):
	"""create/get/update/delete of credential entries.

	``create`` is an atomic create-if-absent and is the only linearization
	point the locking layer relies on. ``delete`` with ``labels`` is a
	compare-and-delete: it removes the entry only while every given label
	still carries the given value.
	"""

	@abstractmethod
	async def create(self, entry: CredentialEntry) -> CredentialEntry:
		"""Create ``entry``. Raises AlreadyExistsError if the name is taken."""

	@abstractmethod
	async def get(self, name: str, namespace: str) -> CredentialEntry:
		"""Fetch an entry. Raises NotFoundError."""

	@abstractmethod
	async def update(self, entry: CredentialEntry) -> CredentialEntry:
		"""Replace an existing entry.

		When ``entry.resource_version`` is set the write only succeeds against
		that version (ConflictError otherwise). Raises NotFoundError.
		"""

	@abstractmethod
	async def delete(
		self,
		name: str,
		namespace: str,
		labels: Optional[Mapping[str, Optional[str]]] = None,
	) -> None:
		"""Delete an entry, optionally fenced on label values.

		Raises NotFoundError or FenceMismatchError.
		"""

	@abstractmethod
	async def list(
		self,
		namespace: str,
		labels: Optional[Mapping[str, str]] = None,
	) -> list[CredentialEntry]:
		"""List entries in a namespace matching an equality label selector."""

	async def close(self) -> None:
		"""Release client resources."""
		return None
