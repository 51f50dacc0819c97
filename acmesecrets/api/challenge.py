#!/usr/bin/env python3
#
# acmesecrets/api/challenge.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Public HTTP-01 challenge responder plus liveness/status endpoints."""

from __future__ import annotations

import logging
import re

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from ..models.entries import DATA_CHALLENGE_AUTH, DATA_CHALLENGE_TOKEN, lease_name
from ..store.base import NotFoundError, StoreError
from ..utils.rate_limit import RATE_LIMIT_CHALLENGE, RATE_LIMIT_STATUS, limiter

_log = logging.getLogger(__name__)

router = APIRouter(tags=["challenge"])
status_router = APIRouter(tags=["status"])

# base64url alphabet only; rejects path tricks before touching the store
_ACME_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def request_host(request: Request) -> str:
	"""Host header without port, lowercased ("" when absent)."""
	host = request.headers.get("host", "").strip().lower()
	if host.startswith("["):
		# IPv6 literal: [::1]:80
		return host.split("]", 1)[0] + "]"
	return host.rsplit(":", 1)[0] if ":" in host else host


@router.get("/.well-known/acme-challenge/{token}", response_class=PlainTextResponse)
@limiter.limit(RATE_LIMIT_CHALLENGE)
async def acme_challenge(request: Request, token: str):
	"""Serve the key authorization published for the requesting host."""
	if not _ACME_TOKEN_RE.match(token):
		return PlainTextResponse("Invalid token", status_code=404)

	host = request_host(request)
	if not host:
		return PlainTextResponse("Missing Host header", status_code=400)

	store = request.app.state.store
	namespace = request.app.state.cfg.acme_namespace
	name = lease_name(host)
	try:
		entry = await store.get(name, namespace)
	except NotFoundError:
		_log.warning("CHALLENGE host=%s no entry %s/%s", host, namespace, name)
		return PlainTextResponse(f"no challenge entry for {host}", status_code=500)
	except StoreError as exc:
		_log.error("CHALLENGE host=%s store error: %s", host, exc)
		return PlainTextResponse(str(exc), status_code=500)

	key_auth = entry.data.get(DATA_CHALLENGE_AUTH)
	if key_auth is None:
		_log.warning("CHALLENGE host=%s entry has no %s", host, DATA_CHALLENGE_AUTH)
		return PlainTextResponse(f"no challenge published for {host}", status_code=500)

	stored_token = entry.data.get(DATA_CHALLENGE_TOKEN)
	if stored_token is not None and stored_token.decode("ascii", errors="replace") != token:
		_log.info("CHALLENGE host=%s token mismatch", host)
		return PlainTextResponse("Challenge not found", status_code=404)

	_log.info("CHALLENGE host=%s token=%s served", host, token)
	return PlainTextResponse(key_auth.decode("ascii", errors="replace"))


@status_router.get("/healthz", response_class=PlainTextResponse)
async def healthz():
	return PlainTextResponse("ok")


@status_router.get("/status")
@limiter.limit(RATE_LIMIT_STATUS)
async def status(request: Request):
	"""Mode, store backend and periodic job state of this instance."""
	state = request.app.state
	scheduler = getattr(state, "scheduler", None)
	return {
		"mode": state.cfg.mode,
		"store": state.cfg.store_backend,
		"controller": scheduler is not None,
		"jobs": scheduler.get_status() if scheduler is not None else [],
	}
