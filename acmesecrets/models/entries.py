#!/usr/bin/env python3
#
# acmesecrets/models/entries.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Store records, leases, routing resources and change events."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from ..utils.time import format_expiry

# ---------------------------------------------------------------------------
# Label and data keys of the persisted layout
# ---------------------------------------------------------------------------
LABEL_MANAGED = "managed"
LABEL_LOCK = "lock"
LABEL_EXPIRY = "expiry"
LABEL_TRUE = "true"

# Opt-in marker on routing resources
LABEL_ACME_TLS = "acme-tls"

DATA_CERTIFICATE = "tls.crt"
DATA_PRIVATE_KEY = "tls.key"
DATA_CERTIFICATE_RESOURCE = "acme.certificate-resource"
DATA_CHALLENGE_TOKEN = "acme-token"
DATA_CHALLENGE_AUTH = "acme-auth"

LEASE_SUFFIX = "-acme"


def lease_name(host: str) -> str:
	"""Name of the lease (and challenge publication) entry for a hostname."""
	return f"{host}{LEASE_SUFFIX}"


@dataclass
class CredentialEntry:
	"""A named, namespaced, labeled key-value record in the store."""
	name: str
	namespace: str
	labels: dict[str, str] = field(default_factory=dict)
	data: dict[str, bytes] = field(default_factory=dict)
	resource_version: Optional[str] = None

	@property
	def is_managed(self) -> bool:
		return self.labels.get(LABEL_MANAGED) == LABEL_TRUE

	def copy(self) -> "CredentialEntry":
		return CredentialEntry(
			name=self.name,
			namespace=self.namespace,
			labels=dict(self.labels),
			data=dict(self.data),
			resource_version=self.resource_version,
		)


@dataclass(frozen=True)
class Lease:
	"""A time-bounded mutual-exclusion token.

	Backed by a ``CredentialEntry`` labeled ``lock=true`` whose ``expiry``
	label doubles as the fencing token for every delete of the lease.
	"""
	name: str
	namespace: str
	expiry_ns: int

	@property
	def fence(self) -> dict[str, str]:
		"""Label values a fenced delete must observe to remove this lease."""
		return {LABEL_EXPIRY: format_expiry(self.expiry_ns)}

	def to_entry(self) -> CredentialEntry:
		return CredentialEntry(
			name=self.name,
			namespace=self.namespace,
			labels={
				LABEL_LOCK: LABEL_TRUE,
				LABEL_EXPIRY: format_expiry(self.expiry_ns),
			},
		)


# ---------------------------------------------------------------------------
# Routing resources
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TLSBinding:
	"""A credential name plus the hostnames it must cover."""
	secret_name: str
	hosts: tuple[str, ...] = ()


@dataclass(frozen=True)
class RoutingResource:
	"""The subset of an Ingress the controller acts on."""
	name: str
	namespace: str
	labels: dict[str, str] = field(default_factory=dict, hash=False)
	tls: tuple[TLSBinding, ...] = ()
	resource_version: Optional[str] = None

	@property
	def key(self) -> str:
		return f"{self.namespace}/{self.name}"

	@property
	def acme_enabled(self) -> bool:
		return self.labels.get(LABEL_ACME_TLS) == LABEL_TRUE

	@classmethod
	def from_ingress(cls, ingress: Any) -> "RoutingResource":
		"""Build from a kubernetes ``V1Ingress`` (or an object shaped like one)."""
		meta = ingress.metadata
		spec = ingress.spec
		bindings = []
		for tls in (getattr(spec, "tls", None) or []):
			# Ingress TLS without secretName falls back to the controller default cert
			if not tls.secret_name:
				continue
			hosts = tuple(dict.fromkeys(h.strip().lower() for h in (tls.hosts or []) if h and h.strip()))
			bindings.append(TLSBinding(secret_name=tls.secret_name, hosts=hosts))
		return cls(
			name=meta.name,
			namespace=meta.namespace or "default",
			labels=dict(meta.labels or {}),
			tls=tuple(bindings),
			resource_version=meta.resource_version,
		)

	def same_content(self, other: "RoutingResource") -> bool:
		"""Deep equality ignoring the store-assigned resource version."""
		return (
			self.name == other.name
			and self.namespace == other.namespace
			and self.labels == other.labels
			and self.tls == other.tls
		)


# ---------------------------------------------------------------------------
# Change events delivered by the event source
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResourceAdded:
	resource: RoutingResource


@dataclass(frozen=True)
class ResourceUpdated:
	old: RoutingResource
	new: RoutingResource


@dataclass(frozen=True)
class ResourceDeleted:
	resource: RoutingResource


ResourceEvent = Union[ResourceAdded, ResourceUpdated, ResourceDeleted]
