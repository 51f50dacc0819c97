"""Tests for acmesecrets.controller.watcher event translation and relisting."""

import asyncio
from types import SimpleNamespace

import pytest
from kubernetes import client

from acmesecrets.controller.watcher import IngressWatcher
from acmesecrets.models import ResourceAdded, ResourceDeleted, ResourceUpdated


def _ingress(name, hosts, rv="1", labels=None):
	return SimpleNamespace(
		metadata=SimpleNamespace(
			name=name, namespace="default", labels=labels or {"acme-tls": "true"}, resource_version=rv,
		),
		spec=SimpleNamespace(tls=[SimpleNamespace(secret_name=f"{name}-tls", hosts=hosts)]),
	)


class Recorder:
	def __init__(self):
		self.events = []

	async def __call__(self, event):
		self.events.append(event)


@pytest.fixture
def recorder():
	return Recorder()


@pytest.fixture
def watcher(recorder):
	return IngressWatcher(client.ApiClient(), recorder, namespace="default")


def _serve_list(watcher, monkeypatch, items, rv="100"):
	result = SimpleNamespace(metadata=SimpleNamespace(resource_version=rv), items=items)
	monkeypatch.setattr(watcher, "_list_call", lambda: ((lambda *args: result), ()))


async def _drain(watcher):
	await asyncio.gather(*list(watcher._inflight))


class TestTranslate:
	def test_added_then_modified(self, watcher):
		first = watcher.translate("ADDED", _ingress("web", ["a.example"], rv="1"))
		assert isinstance(first, ResourceAdded)

		second = watcher.translate("MODIFIED", _ingress("web", ["a.example", "b.example"], rv="2"))
		assert isinstance(second, ResourceUpdated)
		assert second.old.tls[0].hosts == ("a.example",)
		assert second.new.tls[0].hosts == ("a.example", "b.example")
		assert watcher._resource_version == "2"

	def test_modified_without_cache_is_added(self, watcher):
		assert isinstance(watcher.translate("MODIFIED", _ingress("web", ["a.example"])), ResourceAdded)

	def test_deleted_evicts_cache(self, watcher):
		watcher.translate("ADDED", _ingress("web", ["a.example"]))
		event = watcher.translate("DELETED", _ingress("web", ["a.example"]))
		assert isinstance(event, ResourceDeleted)
		assert isinstance(watcher.translate("ADDED", _ingress("web", ["a.example"])), ResourceAdded)

	def test_bookmark_is_ignored(self, watcher):
		bookmark = SimpleNamespace(metadata=SimpleNamespace(resource_version="9"))
		assert watcher.translate("BOOKMARK", bookmark) is None
		assert watcher._resource_version == "9"


class TestSync:
	async def test_initial_list_emits_added(self, watcher, recorder, monkeypatch):
		_serve_list(watcher, monkeypatch, [_ingress("web", ["a.example"]), _ingress("api", ["b.example"])])
		await watcher._sync()
		await _drain(watcher)
		assert sorted(type(e).__name__ for e in recorder.events) == ["ResourceAdded", "ResourceAdded"]
		assert watcher._resource_version == "100"

	async def test_relist_emits_updates_and_deletes(self, watcher, recorder, monkeypatch):
		_serve_list(watcher, monkeypatch, [_ingress("web", ["a.example"]), _ingress("api", ["b.example"])])
		await watcher._sync()
		await _drain(watcher)
		recorder.events.clear()

		_serve_list(watcher, monkeypatch, [_ingress("web", ["a.example"], rv="5")], rv="200")
		await watcher._sync()
		await _drain(watcher)

		kinds = {type(e).__name__: e for e in recorder.events}
		assert set(kinds) == {"ResourceUpdated", "ResourceDeleted"}
		assert kinds["ResourceDeleted"].resource.name == "api"

	async def test_list_resources_for_resync(self, watcher, monkeypatch):
		_serve_list(watcher, monkeypatch, [_ingress("web", ["a.example"])])
		resources = await watcher.list_resources()
		assert [r.key for r in resources] == ["default/web"]


class TestHandlers:
	async def test_handler_errors_are_contained(self, watcher, caplog):
		async def explode(event):
			raise RuntimeError("boom")

		watcher.handler = explode
		watcher._dispatch(watcher.translate("ADDED", _ingress("web", ["a.example"])))
		await _drain(watcher)
		assert "handler failed" in caplog.text

	async def test_stop_waits_for_in_flight_handlers(self, watcher):
		done = []

		async def slow(event):
			await asyncio.sleep(0.05)
			done.append(event)

		watcher.handler = slow
		watcher._dispatch(watcher.translate("ADDED", _ingress("web", ["a.example"])))
		await watcher.stop(timeout=2)
		assert len(done) == 1
