#!/usr/bin/env python3
#
# acmesecrets/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""acme-secrets: ACME certificates for Kubernetes Ingress TLS secrets."""

from .main import create_app

__all__ = ["create_app"]
