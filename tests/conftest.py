"""Shared test fixtures: in-memory store, controllable clock, certificates, fake ACME server."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from acmesecrets.acme import ACMEClient
from acmesecrets.models import CertificateResource
from acmesecrets.store import MemorySecretStore
from acmesecrets.utils.time import NS_PER_SECOND, datetime_to_ns

# Fixed "now" for deterministic expiry arithmetic
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
	"""Callable nanosecond clock that only moves when told to."""

	def __init__(self, start: datetime = NOW) -> None:
		self.ns = datetime_to_ns(start)

	def __call__(self) -> int:
		return self.ns

	def advance(self, seconds: float) -> None:
		self.ns += int(seconds * NS_PER_SECOND)


def make_certificate(
	hosts: list[str],
	not_after: datetime,
	*,
	key: Optional[ec.EllipticCurvePrivateKey] = None,
	san: bool = True,
) -> tuple[bytes, bytes]:
	"""Self-signed PEM certificate and PEM (PKCS8) key for ``hosts``."""
	key = key or ec.generate_private_key(ec.SECP256R1())
	name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hosts[0])])
	builder = (
		x509.CertificateBuilder()
		.subject_name(name)
		.issuer_name(name)
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(not_after - timedelta(days=90))
		.not_valid_after(not_after)
	)
	if san:
		builder = builder.add_extension(
			x509.SubjectAlternativeName([x509.DNSName(h) for h in hosts]),
			critical=False,
		)
	cert = builder.sign(key, hashes.SHA256())
	key_pem = key.private_bytes(
		serialization.Encoding.PEM,
		serialization.PrivateFormat.PKCS8,
		serialization.NoEncryption(),
	)
	return cert.public_bytes(serialization.Encoding.PEM), key_pem


def make_resource(hosts: list[str], not_after: datetime, **kwargs) -> CertificateResource:
	cert_pem, key_pem = make_certificate(hosts, not_after, **kwargs)
	return CertificateResource(
		domain=hosts[0],
		domains=list(hosts),
		cert_url="https://acme.test/cert/1",
		cert_stable_url="https://acme.test/cert/1",
		account_ref="https://acme.test/acct/1",
		certificate=cert_pem.decode("ascii"),
		private_key=key_pem.decode("ascii"),
	)


class FakeIssuer:
	"""CertificateIssuer double that records calls and issues 90-day certs."""

	def __init__(self, *, now: datetime = NOW) -> None:
		self.now = now
		self.obtained: list[tuple[list[str], Optional[bytes]]] = []
		self.renewed: list[CertificateResource] = []
		self.fail_with: Optional[Exception] = None
		self.hook = None

	async def obtain(self, hosts: list[str], private_key: Optional[bytes] = None) -> CertificateResource:
		self.obtained.append((list(hosts), private_key))
		if self.hook is not None:
			await self.hook(hosts)
		if self.fail_with is not None:
			raise self.fail_with
		return make_resource(list(hosts), self.now + timedelta(days=90))

	async def renew(self, existing: CertificateResource) -> CertificateResource:
		self.renewed.append(existing)
		if self.fail_with is not None:
			raise self.fail_with
		return make_resource(list(existing.domains), self.now + timedelta(days=90))


ACME_BASE = "https://acme.test"


def b64url_decode(value: str) -> bytes:
	return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


class FakeAcmeServer:
	"""Just enough of RFC 8555 for one account and HTTP-01 orders."""

	def __init__(self) -> None:
		self.ca_key = ec.generate_private_key(ec.SECP256R1())
		self.ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake CA")])
		self.nonces = 0
		self.bad_nonce_once = False
		self.failing_hosts: set[str] = set()
		self.hosts: list[str] = []
		self.validated: set[str] = set()
		self.challenged: list[str] = []
		self.certificate = ""
		self.requests: list[tuple[str, str]] = []
		self.new_order_status = 201
		self.reverse_authorizations = False

	def _authorization_urls(self) -> list[str]:
		urls = [f"{ACME_BASE}/authz/{h}" for h in self.hosts]
		return urls[::-1] if self.reverse_authorizations else urls

	def _nonce(self) -> dict:
		self.nonces += 1
		return {"Replay-Nonce": f"nonce-{self.nonces}"}

	def _json(self, data, status=200, **headers) -> httpx.Response:
		return httpx.Response(status, json=data, headers={**self._nonce(), **headers})

	def _authz(self, host: str) -> dict:
		if host in self.validated:
			status = "invalid" if host in self.failing_hosts else "valid"
		else:
			status = "pending"
		challenge = {"type": "http-01", "url": f"{ACME_BASE}/chall/{host}", "token": f"tok-{host.replace('.', '-')}"}
		if status == "invalid":
			challenge["error"] = {"detail": f"connection refused for {host}"}
		return {
			"status": status,
			"identifier": {"type": "dns", "value": host},
			"challenges": [{"type": "dns-01", "url": f"{ACME_BASE}/dns/{host}", "token": "x"}, challenge],
		}

	def _sign(self, csr_der: bytes) -> str:
		csr = x509.load_der_x509_csr(csr_der)
		san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
		now = datetime.now(timezone.utc).replace(microsecond=0)
		leaf = (
			x509.CertificateBuilder()
			.subject_name(csr.subject)
			.issuer_name(self.ca_name)
			.public_key(csr.public_key())
			.serial_number(x509.random_serial_number())
			.not_valid_before(now)
			.not_valid_after(now + timedelta(days=90))
			.add_extension(san.value, critical=False)
			.sign(self.ca_key, hashes.SHA256())
		)
		ca = (
			x509.CertificateBuilder()
			.subject_name(self.ca_name)
			.issuer_name(self.ca_name)
			.public_key(self.ca_key.public_key())
			.serial_number(x509.random_serial_number())
			.not_valid_before(now)
			.not_valid_after(now + timedelta(days=365))
			.sign(self.ca_key, hashes.SHA256())
		)
		return (
			leaf.public_bytes(serialization.Encoding.PEM) + ca.public_bytes(serialization.Encoding.PEM)
		).decode("ascii")

	def __call__(self, request: httpx.Request) -> httpx.Response:
		path = request.url.path
		self.requests.append((request.method, path))

		if path == "/directory":
			return httpx.Response(200, json={
				"newNonce": f"{ACME_BASE}/nonce",
				"newAccount": f"{ACME_BASE}/acct",
				"newOrder": f"{ACME_BASE}/order-new",
			})
		if path == "/nonce":
			return httpx.Response(200, headers=self._nonce())

		payload = None
		if request.method == "POST":
			body = json.loads(request.content)
			payload = json.loads(b64url_decode(body["payload"])) if body["payload"] else None

		if path == "/acct":
			return self._json({"status": "valid"}, 201, Location=f"{ACME_BASE}/acct/1")
		if path == "/order-new":
			if self.bad_nonce_once:
				self.bad_nonce_once = False
				return self._json({"type": "urn:ietf:params:acme:error:badNonce", "detail": "stale"}, 400)
			if self.new_order_status != 201:
				return self._json({"type": "urn:ietf:params:acme:error:rejectedIdentifier", "detail": "no"}, self.new_order_status)
			self.hosts = [ident["value"] for ident in payload["identifiers"]]
			return self._json({
				"status": "pending",
				"authorizations": self._authorization_urls(),
				"finalize": f"{ACME_BASE}/finalize/1",
			}, 201, Location=f"{ACME_BASE}/order/1")
		if path.startswith("/authz/"):
			return self._json(self._authz(path.rsplit("/", 1)[1]))
		if path.startswith("/chall/"):
			host = path.rsplit("/", 1)[1]
			self.challenged.append(host)
			self.validated.add(host)
			return self._json({"status": "processing"})
		if path == "/order/1":
			ready = all(h in self.validated and h not in self.failing_hosts for h in self.hosts)
			if self.certificate:
				return self._json({"status": "valid", "certificate": f"{ACME_BASE}/cert/1"})
			return self._json({"status": "ready" if ready else "pending", "finalize": f"{ACME_BASE}/finalize/1"})
		if path == "/finalize/1":
			self.certificate = self._sign(b64url_decode(payload["csr"]))
			return self._json({"status": "valid", "certificate": f"{ACME_BASE}/cert/1"})
		if path == "/cert/1":
			return httpx.Response(200, text=self.certificate, headers=self._nonce())
		return httpx.Response(404)




@pytest.fixture
def store() -> MemorySecretStore:
	return MemorySecretStore()


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture
def issuer() -> FakeIssuer:
	return FakeIssuer()


@pytest.fixture
def server() -> FakeAcmeServer:
	return FakeAcmeServer()


@pytest.fixture
async def acme_client(server, tmp_path):
	client = ACMEClient(
		f"{ACME_BASE}/directory",
		tmp_path,
		transport=httpx.MockTransport(server),
		poll_interval=0,
		poll_attempts=3,
	)
	async with client:
		yield client
