#!/usr/bin/env python3
#
# acmesecrets/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and controller lifecycle wiring."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .acme import ACMEClient, AcmeIssuer, SecretChallengeProvider
from .api import challenge as challenge_api
from .controller import CertificateReconciler, CredentialClassifier
from .locking import LeaseLocker, LockSet
from .store import SecretStore, build_store
from .utils.config import Config, load_config
from .utils.rate_limit import limiter
from .utils.request_id import RequestIDMiddleware
from .utils.scheduler import Scheduler

_log = logging.getLogger(__name__)

# Level colors, applied only when stdout is a terminal
_LOG_COLORS = {
	"DEBUG": "\033[36m",
	"INFO": "\033[32m",
	"WARNING": "\033[33m",
	"ERROR": "\033[31m",
	"CRITICAL": "\033[35m",
}
_RESET = "\033[0m"
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# First resync waits for the watcher's initial list to settle
_RESYNC_INITIAL_DELAY = 60.0


class _ColoredFormatter(logging.Formatter):
	"""Pads and colors the level name when writing to a terminal."""

	def format(self, record):
		levelname = record.levelname
		color = _LOG_COLORS.get(levelname)
		record.levelname = f"{color}{levelname:<8}{_RESET}" if color else f"{levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = levelname


def _setup_logging(log_level: str) -> None:
	"""Route every logger (uvicorn included) through one stdout handler."""
	level = getattr(logging, log_level, logging.INFO)
	if sys.stdout.isatty():
		formatter: logging.Formatter = _ColoredFormatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt=_DATE_FORMAT,
		)

	logging.basicConfig(level=level, handlers=[logging.StreamHandler(sys.stdout)], force=True)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# kubernetes logs every request body at DEBUG
	for name in ("httpcore", "httpx", "kubernetes", "urllib3"):
		logging.getLogger(name).setLevel(logging.WARNING)


def _needs_kube(cfg: Config) -> bool:
	return cfg.store_backend == "kube" or (cfg.runs_controller and bool(cfg.kube_proxy_url))


@asynccontextmanager
async def _lifespan(app: FastAPI):
	cfg: Config = app.state.cfg

	# ─── BOOTSTRAP ───────────────────────────────────────────
	api_client = None
	if _needs_kube(cfg):
		from .store.kube import build_api_client
		api_client = build_api_client(cfg.kube_proxy_url)

	store: SecretStore = getattr(app.state, "store", None) or build_store(cfg, api_client)
	app.state.store = store

	scheduler: Optional[Scheduler] = None
	watcher = None
	watcher_task: Optional[asyncio.Task] = None
	acme_client: Optional[ACMEClient] = None

	if cfg.runs_controller:
		acme_client = ACMEClient(cfg.acme_server, cfg.data_dir)
		await acme_client.open()

		lock_set = LockSet(LeaseLocker(store, cfg.acme_namespace, ttl=cfg.lock_ttl))
		issuer = AcmeIssuer(
			acme_client,
			SecretChallengeProvider(store, cfg.acme_namespace),
			email=cfg.acme_email,
			key_size=cfg.acme_key_size,
		)
		classifier = CredentialClassifier(store, renewal_threshold=cfg.renewal_threshold)
		reconciler = CertificateReconciler(store, lock_set, issuer, classifier)
		app.state.reconciler = reconciler

		if api_client is not None:
			from .controller.watcher import IngressWatcher
			watcher = IngressWatcher(api_client, reconciler.handle, namespace=cfg.watch_namespace)
			watcher_task = asyncio.create_task(watcher.run())
			_log.info("WATCH ingresses in namespace %s", cfg.watch_namespace or "<all>")

			# ─── SCHEDULER ───────────────────────────────────
			async def _resync() -> None:
				resources = await watcher.list_resources()
				results = await reconciler.reconcile_all(resources)
				failed = sum(1 for r in results if r.outcome.failed)
				_log.info("RESYNC resources=%d bindings=%d failed=%d", len(resources), len(results), failed)

			scheduler = Scheduler()
			scheduler.add(
				"resync",
				interval=cfg.resync_interval,
				func=_resync,
				run_on_start=True,
				initial_delay=min(_RESYNC_INITIAL_DELAY, cfg.resync_interval),
			)
			await scheduler.start()
		else:
			_log.warning("No Kubernetes API configured; ingress watching is disabled")

	app.state.scheduler = scheduler
	app.state.watcher = watcher
	_log.info("acme-secrets started (mode=%s, store=%s, pid=%d)", cfg.mode, cfg.store_backend, os.getpid())

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	if scheduler is not None:
		await scheduler.shutdown(timeout=5.0)
	if watcher is not None:
		await watcher.stop()
	if watcher_task is not None and not watcher_task.done():
		watcher_task.cancel()
		await asyncio.gather(watcher_task, return_exceptions=True)
	if acme_client is not None:
		await acme_client.aclose()
	await store.close()
	if api_client is not None:
		api_client.close()
	_log.info("acme-secrets shutdown complete")


def create_app(cfg: Optional[Config] = None, store: Optional[SecretStore] = None) -> FastAPI:
	"""Application factory; ``cfg``/``store`` default to the environment."""
	cfg = cfg or load_config()
	_setup_logging(cfg.log_level)

	app = FastAPI(
		title="acme-secrets",
		description="ACME certificate controller and HTTP-01 responder",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url=None,
		redoc_url=None,
	)
	app.state.cfg = cfg
	if store is not None:
		app.state.store = store

	# ─── MIDDLEWARE ──────────────────────────────────────────
	app.add_middleware(RequestIDMiddleware)
	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

	# ─── ROUTES ──────────────────────────────────────────────
	app.include_router(challenge_api.status_router)
	if cfg.runs_responder:
		app.include_router(challenge_api.router)
	return app
