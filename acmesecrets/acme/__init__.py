#!/usr/bin/env python3
#
# acmesecrets/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME certificate issuance (HTTP-01)."""

from .client import ACMEClient, AcmeError
from .issuer import AcmeIssuer, CertificateIssuer, ObtainError
from .provider import ChallengeProvider, SecretChallengeProvider

__all__ = [
	"ACMEClient",
	"AcmeError",
	"AcmeIssuer",
	"CertificateIssuer",
	"ChallengeProvider",
	"ObtainError",
	"SecretChallengeProvider",
]
