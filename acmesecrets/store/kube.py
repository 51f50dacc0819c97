#!/usr/bin/env python3
#
# acmesecrets/store/kube.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Kubernetes Secrets as the credential store."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Mapping, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from ..models.entries import CredentialEntry
from .base import (
	AlreadyExistsError,
	ConflictError,
	FenceMismatchError,
	NotFoundError,
	SecretStore,
	StoreError,
	labels_match,
)

_log = logging.getLogger(__name__)


def build_api_client(proxy_url: str = "") -> client.ApiClient:
	"""Create an API client.

	With ``proxy_url`` the API server is reached through that URL (e.g.
	``kubectl proxy``). Otherwise in-cluster service account credentials are
	used, falling back to the local kubeconfig.
	"""
	if proxy_url:
		configuration = client.Configuration()
		configuration.host = proxy_url
		return client.ApiClient(configuration)
	try:
		config.load_incluster_config()
		_log.info("KUBE using in-cluster configuration")
	except ConfigException:
		config.load_kube_config()
		_log.info("KUBE using kubeconfig")
	return client.ApiClient()


def label_selector(labels: Optional[Mapping[str, Optional[str]]]) -> Optional[str]:
	"""Render an equality-based label selector string (``!key`` for absent labels)."""
	if not labels:
		return None
	return ",".join(
		f"!{key}" if value is None else f"{key}={value}"
		for key, value in sorted(labels.items())
	)


def _decode_data(data: Optional[dict[str, str]]) -> dict[str, bytes]:
	return {key: base64.b64decode(value) for key, value in (data or {}).items()}


def _encode_data(data: Mapping[str, bytes]) -> dict[str, str]:
	return {key: base64.b64encode(value).decode("ascii") for key, value in data.items()}


def secret_to_entry(secret: client.V1Secret) -> CredentialEntry:
	meta = secret.metadata
	return CredentialEntry(
		name=meta.name,
		namespace=meta.namespace,
		labels=dict(meta.labels or {}),
		data=_decode_data(secret.data),
		resource_version=meta.resource_version,
	)


def entry_to_secret(entry: CredentialEntry) -> client.V1Secret:
	return client.V1Secret(
		api_version="v1",
		kind="Secret",
		metadata=client.V1ObjectMeta(
			name=entry.name,
			namespace=entry.namespace,
			labels=dict(entry.labels),
			resource_version=entry.resource_version,
		),
		data=_encode_data(entry.data),
	)


class KubeSecretStore(SecretStore):
	"""SecretStore over the core/v1 Secrets API.

	The kubernetes client is synchronous; every call runs in a worker thread.
	"""

	def __init__(self, api_client: client.ApiClient) -> None:
		self._api_client = api_client
		self._core = client.CoreV1Api(api_client)

	async def create(self, entry: CredentialEntry) -> CredentialEntry:
		body = entry_to_secret(entry)
		body.metadata.resource_version = None
		try:
			created = await asyncio.to_thread(self._core.create_namespaced_secret, entry.namespace, body)
		except ApiException as exc:
			if exc.status == 409:
				raise AlreadyExistsError(f"secret {entry.namespace}/{entry.name} already exists") from exc
			raise StoreError(f"create secret {entry.namespace}/{entry.name}: {exc.reason}") from exc
		return secret_to_entry(created)

	async def _read(self, name: str, namespace: str) -> client.V1Secret:
		try:
			return await asyncio.to_thread(self._core.read_namespaced_secret, name, namespace)
		except ApiException as exc:
			if exc.status == 404:
				raise NotFoundError(f"secret {namespace}/{name} not found") from exc
			raise StoreError(f"get secret {namespace}/{name}: {exc.reason}") from exc

	async def get(self, name: str, namespace: str) -> CredentialEntry:
		return secret_to_entry(await self._read(name, namespace))

	async def update(self, entry: CredentialEntry) -> CredentialEntry:
		body = entry_to_secret(entry)
		try:
			replaced = await asyncio.to_thread(
				self._core.replace_namespaced_secret, entry.name, entry.namespace, body,
			)
		except ApiException as exc:
			if exc.status == 404:
				raise NotFoundError(f"secret {entry.namespace}/{entry.name} not found") from exc
			if exc.status == 409:
				raise ConflictError(f"secret {entry.namespace}/{entry.name} changed concurrently") from exc
			raise StoreError(f"update secret {entry.namespace}/{entry.name}: {exc.reason}") from exc
		return secret_to_entry(replaced)

	async def delete(
		self,
		name: str,
		namespace: str,
		labels: Optional[Mapping[str, Optional[str]]] = None,
	) -> None:
		options = client.V1DeleteOptions()
		if labels:
			# The API server ignores label selectors on single-object deletes,
			# so the fence is checked here and pinned with uid/resourceVersion
			# preconditions: the delete only lands on the exact version read.
			current = await self._read(name, namespace)
			if not labels_match(current.metadata.labels or {}, labels):
				raise FenceMismatchError(f"secret {namespace}/{name} does not match {label_selector(labels)}")
			options.preconditions = client.V1Preconditions(
				uid=current.metadata.uid,
				resource_version=current.metadata.resource_version,
			)
		try:
			await asyncio.to_thread(self._core.delete_namespaced_secret, name, namespace, body=options)
		except ApiException as exc:
			if exc.status == 404:
				raise NotFoundError(f"secret {namespace}/{name} not found") from exc
			if exc.status == 409 and labels:
				raise FenceMismatchError(f"secret {namespace}/{name} changed before delete") from exc
			raise StoreError(f"delete secret {namespace}/{name}: {exc.reason}") from exc

	async def list(
		self,
		namespace: str,
		labels: Optional[Mapping[str, str]] = None,
	) -> list[CredentialEntry]:
		try:
			result = await asyncio.to_thread(
				self._core.list_namespaced_secret, namespace, label_selector=label_selector(labels),
			)
		except ApiException as exc:
			raise StoreError(f"list secrets in {namespace}: {exc.reason}") from exc
		return [secret_to_entry(item) for item in result.items]

	async def close(self) -> None:
		await asyncio.to_thread(self._api_client.close)
