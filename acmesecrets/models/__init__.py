#!/usr/bin/env python3
#
# acmesecrets/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Data model shared by the store, locking and controller layers."""

from .entries import (
	CredentialEntry,
	Lease,
	ResourceAdded,
	ResourceDeleted,
	ResourceEvent,
	ResourceUpdated,
	RoutingResource,
	TLSBinding,
	lease_name,
)
from .certificates import (
	CertificateParseError,
	CertificateRequest,
	CertificateResource,
)

__all__ = [
	# Store records
	"CredentialEntry",
	"Lease",
	"lease_name",
	# Routing resources
	"RoutingResource",
	"TLSBinding",
	"ResourceAdded",
	"ResourceDeleted",
	"ResourceEvent",
	"ResourceUpdated",
	# Certificates
	"CertificateParseError",
	"CertificateRequest",
	"CertificateResource",
]
