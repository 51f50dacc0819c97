"""Tests for acmesecrets.store.kube against a fake CoreV1Api."""

import copy
import itertools

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from acmesecrets.models import CredentialEntry
from acmesecrets.store import (
	AlreadyExistsError,
	ConflictError,
	FenceMismatchError,
	NotFoundError,
)
from acmesecrets.store.kube import (
	KubeSecretStore,
	entry_to_secret,
	label_selector,
	secret_to_entry,
)


class FakeCoreV1Api:
	"""Secrets held in a dict, honouring resourceVersion and delete preconditions."""

	def __init__(self):
		self.secrets = {}
		self.versions = itertools.count(1)
		self.uids = itertools.count(1)
		self.deletes = []

	def _stamp(self, secret):
		secret = copy.deepcopy(secret)
		secret.metadata.resource_version = str(next(self.versions))
		return secret

	def create_namespaced_secret(self, namespace, body):
		key = (namespace, body.metadata.name)
		if key in self.secrets:
			raise ApiException(status=409, reason="AlreadyExists")
		secret = self._stamp(body)
		secret.metadata.uid = f"uid-{next(self.uids)}"
		self.secrets[key] = secret
		return copy.deepcopy(secret)

	def read_namespaced_secret(self, name, namespace):
		if (namespace, name) not in self.secrets:
			raise ApiException(status=404, reason="NotFound")
		return copy.deepcopy(self.secrets[(namespace, name)])

	def replace_namespaced_secret(self, name, namespace, body):
		current = self.secrets.get((namespace, name))
		if current is None:
			raise ApiException(status=404, reason="NotFound")
		if body.metadata.resource_version and body.metadata.resource_version != current.metadata.resource_version:
			raise ApiException(status=409, reason="Conflict")
		secret = self._stamp(body)
		secret.metadata.uid = current.metadata.uid
		self.secrets[(namespace, name)] = secret
		return copy.deepcopy(secret)

	def delete_namespaced_secret(self, name, namespace, body=None):
		current = self.secrets.get((namespace, name))
		if current is None:
			raise ApiException(status=404, reason="NotFound")
		pre = body.preconditions if body is not None else None
		if pre is not None and (
			pre.uid != current.metadata.uid or pre.resource_version != current.metadata.resource_version
		):
			raise ApiException(status=409, reason="Conflict")
		self.deletes.append(name)
		del self.secrets[(namespace, name)]


@pytest.fixture
def core():
	return FakeCoreV1Api()


@pytest.fixture
def kube_store(core):
	store = KubeSecretStore(client.ApiClient())
	store._core = core
	return store


class TestConversion:
	def test_round_trip_preserves_bytes(self):
		entry = CredentialEntry(name="a", namespace="ns", labels={"managed": "true"}, data={"tls.key": b"\x00\xff"})
		secret = entry_to_secret(entry)
		assert secret.data == {"tls.key": "AP8="}
		assert secret_to_entry(secret) == entry

	def test_label_selector(self):
		assert label_selector(None) is None
		assert label_selector({"lock": "true", "expiry": "5"}) == "expiry=5,lock=true"
		assert label_selector({"expiry": None}) == "!expiry"


class TestKubeSecretStore:
	async def test_create_conflict(self, kube_store):
		await kube_store.create(CredentialEntry(name="a", namespace="ns"))
		with pytest.raises(AlreadyExistsError):
			await kube_store.create(CredentialEntry(name="a", namespace="ns"))

	async def test_get_missing(self, kube_store):
		with pytest.raises(NotFoundError):
			await kube_store.get("a", "ns")

	async def test_update_stale_version(self, kube_store):
		created = await kube_store.create(CredentialEntry(name="a", namespace="ns"))
		await kube_store.update(created)
		with pytest.raises(ConflictError):
			await kube_store.update(created)

	async def test_fenced_delete_checks_labels(self, kube_store, core):
		await kube_store.create(CredentialEntry(name="a", namespace="ns", labels={"expiry": "5"}))
		with pytest.raises(FenceMismatchError):
			await kube_store.delete("a", "ns", labels={"expiry": "6"})
		assert core.deletes == []

		await kube_store.delete("a", "ns", labels={"expiry": "5"})
		assert core.deletes == ["a"]

	async def test_fenced_delete_loses_to_concurrent_replace(self, kube_store, core, monkeypatch):
		await kube_store.create(CredentialEntry(name="a", namespace="ns", labels={"expiry": "5"}))
		real_read = core.read_namespaced_secret

		def read_then_replaced(name, namespace):
			seen = real_read(name, namespace)
			core.secrets[(namespace, name)] = core._stamp(core.secrets[(namespace, name)])
			return seen

		monkeypatch.setattr(core, "read_namespaced_secret", read_then_replaced)
		with pytest.raises(FenceMismatchError):
			await kube_store.delete("a", "ns", labels={"expiry": "5"})

	async def test_delete_missing(self, kube_store):
		with pytest.raises(NotFoundError):
			await kube_store.delete("a", "ns")
