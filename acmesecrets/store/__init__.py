#!/usr/bin/env python3
#
# acmesecrets/store/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Credential store backends."""

from __future__ import annotations

from ..utils.config import Config
from .base import (
	AlreadyExistsError,
	ConflictError,
	FenceMismatchError,
	NotFoundError,
	SecretStore,
	StoreError,
)
from .memory import MemorySecretStore

__all__ = [
	"AlreadyExistsError",
	"ConflictError",
	"FenceMismatchError",
	"MemorySecretStore",
	"NotFoundError",
	"SecretStore",
	"StoreError",
	"build_store",
]


def build_store(cfg: Config, api_client=None) -> SecretStore:
	"""Construct the configured store backend."""
	if cfg.store_backend == "memory":
		return MemorySecretStore()
	from .kube import KubeSecretStore, build_api_client
	return KubeSecretStore(api_client or build_api_client(cfg.kube_proxy_url))
