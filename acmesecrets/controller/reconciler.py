#!/usr/bin/env python3
#
# acmesecrets/controller/reconciler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-binding certificate reconciliation.

Each TLS binding of a routing resource runs through, strictly in order::

	CLASSIFY -> (SKIP | LOCK) -> ISSUE -> PERSIST -> DONE

Lock, issue and persist failures end the binding for this pass; the next
change event or periodic resync re-evaluates it. Leases taken for a binding
are released as soon as that binding is finished, whatever the outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from ..acme.issuer import CertificateIssuer
from ..locking.lockset import LockSet, LockSetError
from ..models.certificates import CertificateRequest, CertificateResource
from ..models.entries import (
	LABEL_MANAGED,
	LABEL_TRUE,
	ResourceAdded,
	ResourceDeleted,
	ResourceEvent,
	ResourceUpdated,
	RoutingResource,
	TLSBinding,
	lease_name,
)
from ..store.base import SecretStore
from .classifier import Classification, CredentialClassifier, CredentialState

_log = logging.getLogger(__name__)


class BindingOutcome(str, Enum):
	SKIPPED_VALID = "skipped-valid"
	SKIPPED_UNMANAGED = "skipped-unmanaged"
	SKIPPED_NO_HOSTS = "skipped-no-hosts"
	CLASSIFY_FAILED = "classify-failed"
	LOCK_FAILED = "lock-failed"
	ISSUE_FAILED = "issue-failed"
	PERSIST_FAILED = "persist-failed"
	ISSUED = "issued"
	RENEWED = "renewed"

	@property
	def failed(self) -> bool:
		return self in _FAILURES


_FAILURES = frozenset({
	BindingOutcome.SKIPPED_UNMANAGED,
	BindingOutcome.CLASSIFY_FAILED,
	BindingOutcome.LOCK_FAILED,
	BindingOutcome.ISSUE_FAILED,
	BindingOutcome.PERSIST_FAILED,
})


@dataclass
class BindingResult:
	"""Terminal state of one binding in one reconciliation pass."""
	resource: str
	secret_name: str
	namespace: str
	hosts: tuple[str, ...]
	outcome: BindingOutcome
	state: Optional[CredentialState] = None
	error: Optional[BaseException] = None
	release_errors: list[Exception] = field(default_factory=list)


class CertificateReconciler:
	"""Drives classify/lock/issue/persist for every binding of a resource."""

	def __init__(
		self,
		store: SecretStore,
		lock_set: LockSet,
		issuer: CertificateIssuer,
		classifier: CredentialClassifier,
	) -> None:
		self.store = store
		self.lock_set = lock_set
		self.issuer = issuer
		self.classifier = classifier

	# ─────────────────────────────────────────────────────────────────────
	# Event entry point
	# ─────────────────────────────────────────────────────────────────────

	async def handle(self, event: ResourceEvent) -> list[BindingResult]:
		"""React to one change notification from the event source."""
		if isinstance(event, ResourceAdded):
			resource = event.resource
		elif isinstance(event, ResourceUpdated):
			resource = event.new
			if event.old.same_content(event.new):
				_log.debug("RECONCILE resource=%s unchanged, skipping", resource.key)
				return []
		elif isinstance(event, ResourceDeleted):
			# Issued credentials outlive the resource that requested them
			_log.info("RECONCILE resource=%s deleted, keeping its credentials", event.resource.key)
			return []
		else:
			raise TypeError(f"unsupported event {type(event).__name__}")

		if not resource.acme_enabled:
			return []
		return await self.reconcile(resource)

	async def reconcile(self, resource: RoutingResource) -> list[BindingResult]:
		"""Process every TLS binding; one failing binding does not stop the rest."""
		results = []
		for binding in resource.tls:
			result = await self.reconcile_binding(resource, binding)
			_report(result)
			results.append(result)
		return results

	async def reconcile_all(self, resources: Iterable[RoutingResource]) -> list[BindingResult]:
		results = []
		for resource in resources:
			if resource.acme_enabled:
				results.extend(await self.reconcile(resource))
		return results

	# ─────────────────────────────────────────────────────────────────────
	# State machine
	# ─────────────────────────────────────────────────────────────────────

	async def reconcile_binding(self, resource: RoutingResource, binding: TLSBinding) -> BindingResult:
		hosts = tuple(binding.hosts)
		result = BindingResult(
			resource=resource.key,
			secret_name=binding.secret_name,
			namespace=resource.namespace,
			hosts=hosts,
			outcome=BindingOutcome.SKIPPED_NO_HOSTS,
		)
		if not hosts:
			return result

		# CLASSIFY
		classification = await self._classify(result)
		if classification is None:
			return result

		# LOCK
		try:
			leases = await self.lock_set.lock_all(lease_name(host) for host in hosts)
		except LockSetError as exc:
			result.outcome = BindingOutcome.LOCK_FAILED
			result.error = exc
			return result

		try:
			# Another replica may have finished while we waited for the leases
			classification = await self._classify(result)
			if classification is None:
				return result

			# ISSUE
			request = _build_request(hosts, classification)
			try:
				issued = await self._issue(request)
			except Exception as exc:
				result.outcome = BindingOutcome.ISSUE_FAILED
				result.error = exc
				return result

			# PERSIST
			try:
				await self._persist(binding.secret_name, resource.namespace, issued, classification)
			except Exception as exc:
				result.outcome = BindingOutcome.PERSIST_FAILED
				result.error = exc
				return result

			result.outcome = BindingOutcome.RENEWED if request.is_renewal else BindingOutcome.ISSUED
			return result
		finally:
			_, result.release_errors = await self.lock_set.unlock_all(leases)

	async def _classify(self, result: BindingResult) -> Optional[Classification]:
		"""Classify the binding's target; None means the binding is finished."""
		try:
			classification = await self.classifier.classify(result.secret_name, result.namespace, result.hosts)
		except Exception as exc:
			result.outcome = BindingOutcome.CLASSIFY_FAILED
			result.error = exc
			return None

		result.state = classification.state
		if classification.state is CredentialState.UNMANAGED:
			result.outcome = BindingOutcome.SKIPPED_UNMANAGED
			result.error = PermissionError(
				f"{result.namespace}/{result.secret_name} exists and is not managed; refusing to overwrite"
			)
			return None
		if not classification.needs_issue:
			result.outcome = BindingOutcome.SKIPPED_VALID
			return None
		return classification

	async def _issue(self, request: CertificateRequest) -> CertificateResource:
		if request.is_renewal and request.existing_resource is not None:
			return await self.issuer.renew(request.existing_resource)
		return await self.issuer.obtain(list(request.hosts), request.private_key)

	async def _persist(
		self,
		secret_name: str,
		namespace: str,
		issued: CertificateResource,
		classification: Classification,
	) -> None:
		if not classification.exists:
			await self.store.create(issued.to_credential_entry(secret_name, namespace))
			return

		existing = classification.entry
		entry = issued.to_credential_entry(
			secret_name,
			namespace,
			resource_version=existing.resource_version if existing else None,
		)
		if existing is not None:
			# Keep foreign labels and data keys, overwrite everything we own
			entry.labels = {**existing.labels, LABEL_MANAGED: LABEL_TRUE}
			entry.data = {**existing.data, **entry.data}
		await self.store.update(entry)


def _build_request(hosts: tuple[str, ...], classification: Classification) -> CertificateRequest:
	resource = classification.resource
	if classification.state is CredentialState.MANAGED_RENEWABLE:
		return CertificateRequest(
			hosts=list(hosts),
			is_renewal=True,
			existing_resource=resource,
			private_key=resource.private_key_bytes if resource and resource.private_key else None,
		)
	if classification.state is CredentialState.MANAGED_HOSTS_CHANGED and resource and resource.private_key:
		return CertificateRequest(hosts=list(hosts), private_key=resource.private_key_bytes)
	return CertificateRequest(hosts=list(hosts))


def _report(result: BindingResult) -> None:
	"""Log the terminal outcome of a binding with enough context to act on it."""
	hosts = ",".join(result.hosts) or "-"
	state = result.state.value if result.state else "-"
	outcome = result.outcome

	if outcome is BindingOutcome.LOCK_FAILED and isinstance(result.error, LockSetError) and result.error.contention_only:
		_log.info(
			"RECONCILE resource=%s secret=%s hosts=%s state=%s outcome=%s (held by another instance): %s",
			result.resource, result.secret_name, hosts, state, outcome.value, result.error,
		)
	elif outcome.failed:
		_log.error(
			"RECONCILE resource=%s secret=%s hosts=%s state=%s outcome=%s: %s",
			result.resource, result.secret_name, hosts, state, outcome.value, result.error,
		)
	elif outcome in (BindingOutcome.ISSUED, BindingOutcome.RENEWED):
		_log.info(
			"RECONCILE resource=%s secret=%s hosts=%s state=%s outcome=%s",
			result.resource, result.secret_name, hosts, state, outcome.value,
		)
	else:
		_log.debug(
			"RECONCILE resource=%s secret=%s hosts=%s state=%s outcome=%s",
			result.resource, result.secret_name, hosts, state, outcome.value,
		)

	if result.release_errors:
		_log.warning(
			"RECONCILE resource=%s secret=%s failed to release %d lease(s): %s",
			result.resource, result.secret_name, len(result.release_errors),
			"; ".join(str(err) for err in result.release_errors),
		)
