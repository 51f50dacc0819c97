#!/usr/bin/env python3
#
# acmesecrets/acme/issuer.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate obtain/renew capability on top of the ACME client."""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Optional, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..models.certificates import CertificateParseError, CertificateResource, split_pem_chain
from .client import ACMEClient, AcmeError
from .provider import ChallengeProvider

_log = logging.getLogger(__name__)


class ObtainError(AcmeError):
	"""Issuance failed; ``errors`` maps each failing host to its cause."""

	def __init__(self, errors: Mapping[str, BaseException]) -> None:
		self.errors = dict(errors)
		lines = [f"{host}: {err}" for host, err in sorted(self.errors.items())]
		super().__init__(f"{len(lines)} error(s) occurred:\n" + "\n".join(f"\t* {line}" for line in lines))


class CertificateIssuer(Protocol):
	async def obtain(self, hosts: list[str], private_key: Optional[bytes] = None) -> CertificateResource: ...

	async def renew(self, existing: CertificateResource) -> CertificateResource: ...


def _pem_private_key(key) -> bytes:
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	)


class AcmeIssuer:
	"""Obtains and renews certificates using HTTP-01 validation."""

	def __init__(
		self,
		client: ACMEClient,
		provider: ChallengeProvider,
		*,
		email: str,
		key_size: int = 2048,
	) -> None:
		self.client = client
		self.provider = provider
		self.email = email
		self.key_size = key_size

	def _load_or_generate_key(self, private_key: Optional[bytes]):
		if private_key:
			try:
				return serialization.load_pem_private_key(private_key, password=None)
			except (ValueError, TypeError) as exc:
				_log.warning("ACME stored private key unusable, generating a new one: %s", exc)
		return rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)

	async def _authorize(self, auth_url: str) -> tuple[str, Optional[Exception]]:
		"""Validate one authorization; returns its domain and the failure, if any.

		The domain is the authorization's identifier, or ``auth_url`` when the
		authorization could not be fetched.
		"""
		domain = auth_url
		try:
			authorization = await self.client.get_authorization(auth_url)
			domain = authorization.get("identifier", {}).get("value") or auth_url
			if authorization.get("status") == "valid":
				_log.debug("ACME domain=%s already authorized", domain)
				return domain, None

			challenge_url, token, key_auth = self.client.get_http01_challenge(authorization)
			await self.provider.present(domain, token, key_auth)
			try:
				await self.client.respond_to_challenge(challenge_url)
				await self.client.poll_authorization(auth_url)
			finally:
				await self.provider.cleanup(domain, token, key_auth)
		except Exception as exc:
			return domain, exc
		_log.info("ACME domain=%s validated", domain)
		return domain, None

	async def obtain(self, hosts: list[str], private_key: Optional[bytes] = None) -> CertificateResource:
		"""Issue one certificate covering ``hosts``.

		Raises:
			ObtainError: per-host failures (order-level failures are keyed by
				every requested host)
		"""
		hosts = list(dict.fromkeys(hosts))
		if not hosts:
			raise ObtainError({"": ValueError("no hosts requested")})

		try:
			account_url = await self.client.register_or_fetch_account(self.email)
			order_url, order = await self.client.new_order(hosts)
		except AcmeError as exc:
			raise ObtainError({host: exc for host in hosts}) from exc

		auth_urls = order.get("authorizations") or []
		results = await asyncio.gather(*(self._authorize(url) for url in auth_urls))
		errors = {domain: exc for domain, exc in results if exc is not None}
		if errors:
			raise ObtainError(errors)

		key = self._load_or_generate_key(private_key)
		try:
			await self.client.poll_order(order_url)
			chain_pem, cert_url = await self.client.finalize_order(
				order_url, order["finalize"], hosts, key,
			)
		except (AcmeError, KeyError) as exc:
			raise ObtainError({host: exc for host in hosts}) from exc

		blocks = split_pem_chain(chain_pem)
		resource = CertificateResource(
			domain=hosts[0],
			domains=hosts,
			cert_url=cert_url,
			cert_stable_url=cert_url,
			account_ref=account_url,
			certificate=chain_pem.decode("ascii"),
			private_key=_pem_private_key(key).decode("ascii"),
			issuer_certificate=b"\n".join(blocks[1:]).decode("ascii"),
		)
		_log.info("ACME issued certificate for %s", ", ".join(hosts))
		return resource

	async def renew(self, existing: CertificateResource) -> CertificateResource:
		"""Re-issue for the hosts of ``existing``, reusing its private key."""
		hosts = list(existing.domains)
		if not hosts:
			try:
				hosts = existing.dns_names()
			except CertificateParseError as exc:
				raise AcmeError(f"cannot determine hosts to renew: {exc}") from exc
		if not hosts and existing.domain:
			hosts = [existing.domain]

		private_key = existing.private_key_bytes if existing.private_key else None
		renewed = await self.obtain(hosts, private_key)
		_log.info("ACME renewed certificate for %s", ", ".join(hosts))
		return renewed
