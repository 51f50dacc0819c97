#!/usr/bin/env python3
#
# acmesecrets/controller/classifier.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Classification of the credential entry a TLS binding points at."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from ..models.certificates import CertificateParseError, CertificateResource
from ..models.entries import CredentialEntry
from ..store.base import NotFoundError, SecretStore
from ..utils.time import Clock, now_ns, ns_to_datetime

_log = logging.getLogger(__name__)

DEFAULT_RENEWAL_THRESHOLD = timedelta(days=30)


class CredentialState(str, Enum):
	ABSENT = "absent"
	UNMANAGED = "unmanaged"
	MANAGED_VALID = "managed-valid"
	MANAGED_RENEWABLE = "managed-renewable"
	MANAGED_CORRUPT = "managed-corrupt"
	# Certificate parses but its host set differs from the binding's hosts
	MANAGED_HOSTS_CHANGED = "managed-hosts-changed"


@dataclass(frozen=True)
class Classification:
	state: CredentialState
	entry: Optional[CredentialEntry] = None
	resource: Optional[CertificateResource] = None
	expiry: Optional[datetime] = None
	reason: str = ""

	@property
	def exists(self) -> bool:
		"""The target name is occupied, so persisting must update, not create."""
		return self.state is not CredentialState.ABSENT

	@property
	def needs_issue(self) -> bool:
		return self.state in (
			CredentialState.ABSENT,
			CredentialState.MANAGED_RENEWABLE,
			CredentialState.MANAGED_CORRUPT,
			CredentialState.MANAGED_HOSTS_CHANGED,
		)

	@property
	def is_renewal(self) -> bool:
		return self.state is CredentialState.MANAGED_RENEWABLE


class CredentialClassifier:
	"""Reads the current store state for a binding and classifies it.

	``now + renewal_threshold >= notAfter`` means renewable; the boundary
	itself is renewable.
	"""

	def __init__(
		self,
		store: SecretStore,
		*,
		renewal_threshold: timedelta = DEFAULT_RENEWAL_THRESHOLD,
		clock: Clock = now_ns,
	) -> None:
		self.store = store
		self.renewal_threshold = renewal_threshold
		self._clock = clock

	async def classify(self, secret_name: str, namespace: str, hosts: Iterable[str]) -> Classification:
		"""Classify ``namespace/secret_name``.

		Store failures other than "not found" propagate to the caller.
		"""
		try:
			entry = await self.store.get(secret_name, namespace)
		except NotFoundError:
			return Classification(CredentialState.ABSENT)

		if not entry.is_managed:
			return Classification(
				CredentialState.UNMANAGED,
				entry=entry,
				reason="entry exists and is not managed by this controller",
			)

		try:
			resource = CertificateResource.from_credential_entry(entry)
			expiry = resource.expiry()
			names = set(resource.dns_names())
		except CertificateParseError as exc:
			_log.info("CLASSIFY %s/%s corrupt managed entry: %s", namespace, secret_name, exc)
			return Classification(CredentialState.MANAGED_CORRUPT, entry=entry, reason=str(exc))

		wanted = {h.lower() for h in hosts}
		declared = {d.lower() for d in resource.domains} or names
		# Renewal orders the stored host set, which must equal the locked binding hosts
		missing = sorted(wanted - names)
		extra = sorted((names | declared) - wanted)
		if missing or extra or declared != names:
			problems = []
			if missing:
				problems.append(f"does not cover {', '.join(missing)}")
			if extra:
				problems.append(f"also covers {', '.join(extra)}")
			return Classification(
				CredentialState.MANAGED_HOSTS_CHANGED,
				entry=entry,
				resource=resource,
				expiry=expiry,
				reason="certificate " + " and ".join(problems or ["metadata disagrees with its SANs"]),
			)

		now = ns_to_datetime(self._clock())
		if now + self.renewal_threshold >= expiry:
			return Classification(
				CredentialState.MANAGED_RENEWABLE,
				entry=entry,
				resource=resource,
				expiry=expiry,
				reason=f"expires {expiry.isoformat()}",
			)
		return Classification(
			CredentialState.MANAGED_VALID,
			entry=entry,
			resource=resource,
			expiry=expiry,
		)
