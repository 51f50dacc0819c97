#!/usr/bin/env python3
#
# acmesecrets/controller/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Binding classification, reconciliation and the Ingress event source."""

from .classifier import (
	DEFAULT_RENEWAL_THRESHOLD,
	Classification,
	CredentialClassifier,
	CredentialState,
)
from .reconciler import BindingOutcome, BindingResult, CertificateReconciler

__all__ = [
	"BindingOutcome",
	"BindingResult",
	"CertificateReconciler",
	"Classification",
	"CredentialClassifier",
	"CredentialState",
	"DEFAULT_RENEWAL_THRESHOLD",
]
