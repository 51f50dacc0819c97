#!/usr/bin/env python3
#
# acmesecrets/controller/watcher.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Ingress event source: kubernetes watch stream -> typed resource events."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from ..models.entries import (
	ResourceAdded,
	ResourceDeleted,
	ResourceEvent,
	ResourceUpdated,
	RoutingResource,
)

_log = logging.getLogger(__name__)

EventHandler = Callable[[ResourceEvent], Awaitable[Any]]

_END = object()
_RETRY_DELAY = 5.0


class IngressWatcher:
	"""Lists and watches Ingresses, delivering ResourceAdded/Updated/Deleted.

	A local cache keyed by ``namespace/name`` supplies the previous version
	for update events. Handlers run as independent tasks so a slow issuance
	never stalls the stream; ``stop()`` stops delivery and waits for the
	handlers already running.
	"""

	def __init__(
		self,
		api_client: client.ApiClient,
		handler: EventHandler,
		*,
		namespace: str = "",
		timeout_seconds: int = 300,
	) -> None:
		self._api = client.NetworkingV1Api(api_client)
		self.handler = handler
		self.namespace = namespace
		self.timeout_seconds = timeout_seconds
		self._cache: dict[str, RoutingResource] = {}
		self._resource_version: Optional[str] = None
		self._inflight: set[asyncio.Task] = set()
		self._watch: Optional[watch.Watch] = None
		self._stop_event = asyncio.Event()

	# ─── Listing ─────────────────────────────────────────────

	def _list_call(self):
		if self.namespace:
			return self._api.list_namespaced_ingress, (self.namespace,)
		return self._api.list_ingress_for_all_namespaces, ()

	async def list_resources(self) -> list[RoutingResource]:
		"""Current Ingresses as routing resources (also used by the resync job)."""
		func, args = self._list_call()
		result = await asyncio.to_thread(func, *args)
		self._resource_version = result.metadata.resource_version
		return [RoutingResource.from_ingress(item) for item in result.items]

	# ─── Event translation ───────────────────────────────────

	def translate(self, event_type: str, obj: Any) -> Optional[ResourceEvent]:
		"""Map one raw watch event onto a typed event, updating the cache."""
		if obj is not None and getattr(obj, "metadata", None) is not None:
			self._resource_version = obj.metadata.resource_version or self._resource_version

		if event_type in ("ADDED", "MODIFIED"):
			resource = RoutingResource.from_ingress(obj)
			old = self._cache.get(resource.key)
			self._cache[resource.key] = resource
			if old is None:
				return ResourceAdded(resource)
			return ResourceUpdated(old, resource)
		if event_type == "DELETED":
			resource = RoutingResource.from_ingress(obj)
			self._cache.pop(resource.key, None)
			return ResourceDeleted(resource)
		# BOOKMARK and anything unknown carry no resource change
		return None

	def _dispatch(self, event: ResourceEvent) -> None:
		task = asyncio.create_task(self._run_handler(event))
		self._inflight.add(task)
		task.add_done_callback(self._inflight.discard)

	async def _run_handler(self, event: ResourceEvent) -> None:
		try:
			await self.handler(event)
		except Exception:
			_log.exception("WATCH handler failed for %s", type(event).__name__)

	# ─── Watch loop ──────────────────────────────────────────

	async def _sync(self) -> None:
		"""Relist and emit events for everything that changed since the cache was filled."""
		resources = await self.list_resources()
		seen = set()
		for resource in resources:
			seen.add(resource.key)
			old = self._cache.get(resource.key)
			self._cache[resource.key] = resource
			self._dispatch(ResourceAdded(resource) if old is None else ResourceUpdated(old, resource))
		for key in list(self._cache):
			if key not in seen:
				self._dispatch(ResourceDeleted(self._cache.pop(key)))
		_log.info("WATCH listed %d ingresses (resourceVersion=%s)", len(resources), self._resource_version)

	async def _watch_once(self) -> None:
		loop = asyncio.get_running_loop()
		queue: asyncio.Queue = asyncio.Queue()
		func, args = self._list_call()
		self._watch = watch.Watch()
		stream_watch = self._watch
		resource_version = self._resource_version

		def pump() -> None:
			try:
				for raw in stream_watch.stream(
					func, *args,
					resource_version=resource_version,
					timeout_seconds=self.timeout_seconds,
				):
					loop.call_soon_threadsafe(queue.put_nowait, raw)
			except Exception as exc:
				loop.call_soon_threadsafe(queue.put_nowait, exc)
			finally:
				loop.call_soon_threadsafe(queue.put_nowait, _END)

		pump_task = asyncio.create_task(asyncio.to_thread(pump))
		try:
			while True:
				item = await queue.get()
				if item is _END:
					break
				if isinstance(item, Exception):
					raise item
				event = self.translate(item["type"], item.get("object"))
				if event is not None:
					self._dispatch(event)
		finally:
			stream_watch.stop()
			if pump_task.done():
				await pump_task

	async def run(self) -> None:
		"""List, then watch until ``stop()``; relists after errors or 410 Gone."""
		needs_sync = True
		while not self._stop_event.is_set():
			try:
				if needs_sync:
					await self._sync()
					needs_sync = False
				await self._watch_once()
			except asyncio.CancelledError:
				raise
			except ApiException as exc:
				needs_sync = True
				if exc.status == 410:
					_log.info("WATCH resourceVersion expired, relisting")
					continue
				_log.warning("WATCH API error %s: %s", exc.status, exc.reason)
			except Exception as exc:
				needs_sync = True
				_log.warning("WATCH stream failed: %s", exc)
			else:
				continue
			try:
				await asyncio.wait_for(self._stop_event.wait(), timeout=_RETRY_DELAY)
			except asyncio.TimeoutError:
				pass

	async def stop(self, timeout: float = 30.0) -> None:
		"""Stop delivering events and wait for running handlers."""
		self._stop_event.set()
		if self._watch is not None:
			self._watch.stop()
		pending = [t for t in self._inflight if not t.done()]
		if pending:
			_log.info("WATCH waiting for %d in-flight reconciliations", len(pending))
			await asyncio.wait(pending, timeout=timeout)
