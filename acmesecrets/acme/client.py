#!/usr/bin/env python3
#
# acmesecrets/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Minimal async ACME v2 client (RFC 8555) covering the HTTP-01 flow.

The account key is an EC P-256 key kept in ``data_dir`` together with the
account URL and the key's JWK thumbprint. A changed key invalidates the
stored URL and triggers a fresh registration.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.types import CertificateIssuerPrivateKeyTypes
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

_log = logging.getLogger(__name__)

_BAD_NONCE = "urn:ietf:params:acme:error:badNonce"
_JOSE_HEADERS = {"Content-Type": "application/jose+json"}

# RFC 7638 required members per key type, already in lexicographic order
_THUMBPRINT_MEMBERS = {
	"EC": ("crv", "kty", "x", "y"),
	"RSA": ("e", "kty", "n"),
}

_AUTHZ_FINAL_FAILURES = frozenset({"invalid", "expired", "revoked", "deactivated"})
_ORDER_FAILURES = frozenset({"invalid", "expired", "revoked"})


class AcmeError(Exception):
	"""The ACME server rejected a request or answered with something unusable."""

	def __init__(self, message: str, *, status: Optional[int] = None, error_type: str = "") -> None:
		super().__init__(message)
		self.status = status
		self.error_type = error_type


def _b64url(data: bytes) -> str:
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64json(obj: dict) -> str:
	return _b64url(json.dumps(obj).encode("utf-8"))


def _problem(resp: httpx.Response) -> tuple[str, str]:
	"""``(type, detail)`` of an RFC 7807 problem document, empty when absent."""
	try:
		doc = resp.json()
	except ValueError:
		return "", ""
	if not isinstance(doc, dict):
		return "", ""
	return str(doc.get("type") or ""), str(doc.get("detail") or "")


def _raise_for(resp: httpx.Response, action: str) -> None:
	error_type, detail = _problem(resp)
	if detail:
		reason = f"{detail} ({error_type})" if error_type else detail
	else:
		reason = resp.text or f"HTTP {resp.status_code}"
	raise AcmeError(f"{action} failed: {reason}", status=resp.status_code, error_type=error_type)


def jwk_thumbprint(jwk: dict) -> str:
	"""Base64url SHA-256 over the canonical required members of ``jwk``."""
	members = _THUMBPRINT_MEMBERS.get(jwk.get("kty", ""))
	if members is None:
		raise ValueError(f"cannot compute thumbprint for key type {jwk.get('kty')!r}")
	canonical = json.dumps({m: jwk[m] for m in members}, separators=(",", ":"))
	return _b64url(hashlib.sha256(canonical.encode("utf-8")).digest())


def build_csr(domains: list[str], key: CertificateIssuerPrivateKeyTypes) -> bytes:
	"""DER-encoded CSR with every domain in the SAN extension."""
	csr = (
		x509.CertificateSigningRequestBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
		.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
			critical=False,
		)
		.sign(key, hashes.SHA256())
	)
	return csr.public_bytes(serialization.Encoding.DER)


class _AccountFiles:
	"""Account key, URL and thumbprint persisted under one directory."""

	def __init__(self, data_dir: Path) -> None:
		self.data_dir = data_dir
		self.key_path = data_dir / "account_key.pem"
		self.url_path = data_dir / "account_url.txt"
		self.thumbprint_path = data_dir / "account_thumbprint.txt"

	def load_key(self) -> ec.EllipticCurvePrivateKey:
		if self.key_path.exists():
			key = serialization.load_pem_private_key(self.key_path.read_bytes(), password=None)
			if not isinstance(key, ec.EllipticCurvePrivateKey):
				raise ValueError(f"{self.key_path} does not hold an EC private key")
			return key

		key = ec.generate_private_key(ec.SECP256R1())
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.key_path.write_bytes(key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		))
		self.key_path.chmod(0o600)
		_log.info("ACME generated account key %s", self.key_path)
		return key

	def stored_url(self, thumbprint: str) -> Optional[str]:
		"""The saved account URL if it belongs to the key with ``thumbprint``."""
		if not self.url_path.exists():
			return None
		if self.thumbprint_path.exists():
			if self.thumbprint_path.read_text().strip() != thumbprint:
				_log.warning("ACME account key differs from the registered one, registering again")
				self.url_path.unlink()
				self.thumbprint_path.unlink()
				return None
		else:
			# Older data dirs predate the thumbprint file
			self.thumbprint_path.write_text(thumbprint)
		return self.url_path.read_text().strip() or None

	def save(self, url: str, thumbprint: str) -> None:
		self.url_path.write_text(url)
		self.thumbprint_path.write_text(thumbprint)


class ACMEClient:
	"""Shared ACME session: directory, nonce and account state.

	Account setup runs once per client and is serialized, so concurrent
	issuances do not register twice.
	"""

	def __init__(
		self,
		directory_url: str,
		data_dir: Path,
		*,
		transport: Optional[httpx.AsyncBaseTransport] = None,
		poll_interval: float = 2.0,
		poll_attempts: int = 30,
	):
		self.directory_url = directory_url
		self.poll_interval = poll_interval
		self.poll_attempts = poll_attempts
		self._files = _AccountFiles(data_dir)
		self._transport = transport
		self._http_client: Optional[httpx.AsyncClient] = None
		self._directory: dict = {}
		self._nonce: Optional[str] = None
		self._key: Optional[ec.EllipticCurvePrivateKey] = None
		self._account_url: Optional[str] = None
		self._account_lock = asyncio.Lock()

	async def open(self) -> None:
		if self._http_client is None:
			self._http_client = httpx.AsyncClient(timeout=30.0, transport=self._transport)

	async def aclose(self) -> None:
		if self._http_client is not None:
			await self._http_client.aclose()
			self._http_client = None

	async def __aenter__(self):
		await self.open()
		return self

	async def __aexit__(self, *args):
		await self.aclose()

	@property
	def _http(self) -> httpx.AsyncClient:
		if self._http_client is None:
			raise RuntimeError("ACMEClient used before open()")
		return self._http_client

	def _require_key(self) -> ec.EllipticCurvePrivateKey:
		if self._key is None:
			raise RuntimeError("no ACME account key loaded; call register_or_fetch_account first")
		return self._key

	# ─── JWS ─────────────────────────────────────────────────

	def _get_jwk(self) -> dict:
		numbers = self._require_key().public_key().public_numbers()
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": _b64url(numbers.x.to_bytes(32, "big")),
			"y": _b64url(numbers.y.to_bytes(32, "big")),
		}

	def _es256(self, signing_input: bytes) -> str:
		r, s = decode_dss_signature(self._require_key().sign(signing_input, ec.ECDSA(hashes.SHA256())))
		return _b64url(r.to_bytes(32, "big") + s.to_bytes(32, "big"))

	async def _next_nonce(self) -> str:
		if self._nonce is not None:
			nonce, self._nonce = self._nonce, None
			return nonce

		url = self._directory["newNonce"]
		try:
			resp = await self._http.head(url)
		except httpx.HTTPError as exc:
			_log.debug("ACME HEAD %s failed (%s), trying GET", url, exc)
			resp = None
		if resp is None or "Replay-Nonce" not in resp.headers:
			resp = await self._http.get(url)
		nonce = resp.headers.get("Replay-Nonce")
		if not nonce:
			raise AcmeError("server returned no Replay-Nonce", status=resp.status_code)
		return nonce

	async def _post_once(self, url: str, payload: Optional[dict]) -> httpx.Response:
		header: dict = {"alg": "ES256", "nonce": await self._next_nonce(), "url": url}
		if self._account_url:
			header["kid"] = self._account_url
		else:
			header["jwk"] = self._get_jwk()

		protected = _b64json(header)
		# POST-as-GET carries an empty payload
		body = "" if payload is None else _b64json(payload)
		resp = await self._http.post(
			url,
			json={
				"protected": protected,
				"payload": body,
				"signature": self._es256(f"{protected}.{body}".encode("ascii")),
			},
			headers=_JOSE_HEADERS,
		)
		self._nonce = resp.headers.get("Replay-Nonce") or None
		return resp

	async def _signed_request(self, url: str, payload: Optional[dict]) -> httpx.Response:
		resp = await self._post_once(url, payload)
		if resp.status_code == 400 and _problem(resp)[0] == _BAD_NONCE:
			_log.debug("ACME nonce rejected by %s, resending", url)
			resp = await self._post_once(url, payload)
		return resp

	async def _expect(self, url: str, payload: Optional[dict], ok: tuple[int, ...], action: str) -> httpx.Response:
		resp = await self._signed_request(url, payload)
		if resp.status_code not in ok:
			_raise_for(resp, action)
		return resp

	# ─── Account ─────────────────────────────────────────────

	async def register_or_fetch_account(self, email: str) -> str:
		"""Account URL for this client's key, registering it on first use."""
		async with self._account_lock:
			if self._account_url is None:
				self._account_url = await self._setup_account(email)
			return self._account_url

	async def _setup_account(self, email: str) -> str:
		resp = await self._http.get(self.directory_url)
		resp.raise_for_status()
		self._directory = resp.json()
		self._key = self._files.load_key()
		thumbprint = jwk_thumbprint(self._get_jwk())

		url = self._files.stored_url(thumbprint)
		if url:
			_log.info("ACME reusing account %s", url)
			return url

		resp = await self._expect(
			self._directory["newAccount"],
			{"termsOfServiceAgreed": True, "contact": [f"mailto:{email}"]},
			(200, 201),
			"account registration",
		)
		url = resp.headers.get("Location")
		if not url:
			raise AcmeError("account registration returned no Location", status=resp.status_code)
		self._files.save(url, thumbprint)
		_log.info("ACME registered account %s for %s", url, email)
		return url

	# ─── Orders and authorizations ───────────────────────────

	async def new_order(self, domains: list[str]) -> tuple[str, dict]:
		"""Open an order for ``domains``; returns its URL and body."""
		resp = await self._expect(
			self._directory["newOrder"],
			{"identifiers": [{"type": "dns", "value": d} for d in domains]},
			(200, 201),
			"new order",
		)
		order_url = resp.headers.get("Location")
		if not order_url:
			raise AcmeError("new order returned no Location", status=resp.status_code)
		return order_url, resp.json()

	async def get_authorization(self, auth_url: str) -> dict:
		resp = await self._expect(auth_url, None, (200,), "authorization fetch")
		return resp.json()

	def get_http01_challenge(self, authorization: dict) -> tuple[str, str, str]:
		"""``(url, token, key_authorization)`` of the http-01 challenge."""
		challenge = next(
			(c for c in authorization.get("challenges", []) if c.get("type") == "http-01"),
			None,
		)
		if challenge is None:
			raise AcmeError("authorization offers no http-01 challenge")
		token = challenge["token"]
		return challenge["url"], token, f"{token}.{jwk_thumbprint(self._get_jwk())}"

	async def respond_to_challenge(self, challenge_url: str) -> dict:
		resp = await self._expect(challenge_url, {}, (200, 202), "challenge response")
		return resp.json()

	async def _poll(self, fetch: Callable[[], Awaitable[dict]], done: Callable[[dict], bool], what: str) -> dict:
		for attempt in range(self.poll_attempts):
			if attempt:
				await asyncio.sleep(self.poll_interval)
			doc = await fetch()
			if done(doc):
				return doc
		raise AcmeError(f"gave up waiting for {what} after {self.poll_attempts} attempts")

	async def poll_authorization(self, auth_url: str) -> dict:
		"""Wait until the authorization is valid; raise once it cannot become valid."""

		def done(authorization: dict) -> bool:
			status = authorization.get("status")
			if status in _AUTHZ_FINAL_FAILURES:
				details = [
					c["error"].get("detail", "")
					for c in authorization.get("challenges", [])
					if c.get("error")
				]
				reason = f"authorization {status}"
				raise AcmeError(f"{reason}: {details[0]}" if details and details[0] else reason)
			return status == "valid"

		return await self._poll(lambda: self.get_authorization(auth_url), done, "authorization")

	async def _fetch_order(self, order_url: str) -> dict:
		resp = await self._expect(order_url, None, (200,), "order fetch")
		order = resp.json()
		if order.get("status") in _ORDER_FAILURES:
			raise AcmeError(f"order {order.get('status')}")
		return order

	async def poll_order(self, order_url: str) -> dict:
		"""Wait until the order is ready for finalization (or already valid)."""
		return await self._poll(
			lambda: self._fetch_order(order_url),
			lambda order: order.get("status") in ("ready", "valid"),
			"order",
		)

	async def finalize_order(
		self,
		order_url: str,
		finalize_url: str,
		domains: list[str],
		key: CertificateIssuerPrivateKeyTypes,
	) -> tuple[bytes, str]:
		"""Submit the CSR, wait for issuance and download the PEM chain.

		Returns the chain and the certificate URL.
		"""
		resp = await self._expect(
			finalize_url,
			{"csr": _b64url(build_csr(domains, key))},
			(200, 201),
			"order finalization",
		)
		order = resp.json()
		if order.get("status") != "valid":
			order = await self._poll(
				lambda: self._fetch_order(order_url),
				lambda o: o.get("status") == "valid",
				"certificate issuance",
			)

		cert_url = order.get("certificate")
		if not cert_url:
			raise AcmeError("valid order carries no certificate URL")
		cert_resp = await self._expect(cert_url, None, (200,), "certificate download")
		return cert_resp.text.encode("utf-8"), cert_url
