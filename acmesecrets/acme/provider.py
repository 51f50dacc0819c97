#!/usr/bin/env python3
#
# acmesecrets/acme/provider.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""HTTP-01 challenge publication through the credential store."""

from __future__ import annotations

import logging
from typing import Protocol

from ..models.entries import DATA_CHALLENGE_AUTH, DATA_CHALLENGE_TOKEN, lease_name
from ..store.base import SecretStore

_log = logging.getLogger(__name__)


class ChallengeProvider(Protocol):
	async def present(self, domain: str, token: str, key_auth: str) -> None: ...

	async def cleanup(self, domain: str, token: str, key_auth: str) -> None: ...


class SecretChallengeProvider:
	"""Publishes key authorizations into the ``<domain>-acme`` entry.

	That entry is the lease held for the domain while it is being issued, so
	the responder and the lock share one record. Only data keys are written;
	labels (and with them the lease's fencing token) are left untouched.
	"""

	def __init__(self, store: SecretStore, namespace: str) -> None:
		self.store = store
		self.namespace = namespace

	async def present(self, domain: str, token: str, key_auth: str) -> None:
		entry = await self.store.get(lease_name(domain), self.namespace)
		entry.data[DATA_CHALLENGE_TOKEN] = token.encode("ascii")
		entry.data[DATA_CHALLENGE_AUTH] = key_auth.encode("ascii")
		await self.store.update(entry)
		_log.info("CHALLENGE domain=%s token=%s published", domain, token)

	async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
		# The entry disappears with the lease on release
		return None
