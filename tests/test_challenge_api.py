"""Tests for the HTTP-01 challenge responder (FastAPI TestClient)."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from acmesecrets import create_app
from acmesecrets.models import CredentialEntry
from acmesecrets.models.entries import DATA_CHALLENGE_AUTH, DATA_CHALLENGE_TOKEN
from acmesecrets.store import MemorySecretStore
from acmesecrets.utils.config import Config

TOKEN = "evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA"
KEY_AUTH = TOKEN + ".9jg46WB3rR_AHD-EBXdN7cBkH1WOu0tA3M9fm21mqTI"


def _seed(store, host="a.example.com", data=None):
	entry = CredentialEntry(
		name=f"{host}-acme",
		namespace="acme",
		labels={"lock": "true", "expiry": "1"},
		data=data if data is not None else {
			DATA_CHALLENGE_TOKEN: TOKEN.encode(),
			DATA_CHALLENGE_AUTH: KEY_AUTH.encode(),
		},
	)
	asyncio.run(store.create(entry))


@pytest.fixture
def store():
	return MemorySecretStore()


@pytest.fixture
def client(tmp_path, store):
	cfg = Config(data_dir=tmp_path, mode="serve", store_backend="memory")
	with TestClient(create_app(cfg, store=store)) as test_client:
		yield test_client


def _get(client, token=TOKEN, host="a.example.com"):
	return client.get(f"/.well-known/acme-challenge/{token}", headers={"host": host})


class TestChallenge:
	def test_serves_key_authorization(self, client, store):
		_seed(store)
		resp = _get(client)
		assert resp.status_code == 200
		assert resp.text == KEY_AUTH
		assert resp.headers["content-type"].startswith("text/plain")

	def test_port_is_stripped_from_host(self, client, store):
		_seed(store)
		assert _get(client, host="a.example.com:80").text == KEY_AUTH

	def test_host_is_case_insensitive(self, client, store):
		_seed(store)
		assert _get(client, host="A.Example.COM").status_code == 200

	def test_missing_entry_is_server_error(self, client):
		assert _get(client).status_code == 500

	def test_missing_key_auth_is_server_error(self, client, store):
		_seed(store, data={})
		assert _get(client).status_code == 500

	def test_token_mismatch_is_not_found(self, client, store):
		_seed(store)
		assert _get(client, token="someOtherToken").status_code == 404

	def test_malformed_token_is_not_found(self, client, store):
		_seed(store)
		assert _get(client, token="bad.token").status_code == 404

	def test_request_id_is_echoed(self, client, store):
		_seed(store)
		resp = client.get(
			f"/.well-known/acme-challenge/{TOKEN}",
			headers={"host": "a.example.com", "X-Request-ID": "abc123"},
		)
		assert resp.headers["X-Request-ID"] == "abc123"


class TestStatus:
	def test_healthz(self, client):
		resp = client.get("/healthz")
		assert resp.status_code == 200
		assert resp.text == "ok"

	def test_status_in_serve_mode(self, client):
		body = client.get("/status").json()
		assert body == {"mode": "serve", "store": "memory", "controller": False, "jobs": []}


def test_monitor_mode_has_no_challenge_route(tmp_path):
	cfg = Config(data_dir=tmp_path, mode="monitor", store_backend="memory", acme_email="ops@example.com")
	app = create_app(cfg, store=MemorySecretStore())
	paths = {route.path for route in app.routes}
	assert "/healthz" in paths
	assert "/.well-known/acme-challenge/{token}" not in paths
