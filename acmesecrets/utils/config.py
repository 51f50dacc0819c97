#!/usr/bin/env python3
#
# acmesecrets/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and controller defaults."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""A setting is missing, malformed or contradicts another one."""


ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

MODES = ("monitor", "serve", "all")
STORE_BACKENDS = ("kube", "memory")


@dataclass(frozen=True)
class Config:
	"""Settings for one process; ``mode`` selects controller, responder or both."""
	data_dir: Path
	mode: str = "all"
	acme_server: str = ACME_DIRECTORY_STAGING
	acme_email: str = ""
	acme_key_size: int = 2048
	acme_namespace: str = "acme"
	watch_namespace: str = "default"
	renewal_threshold: timedelta = timedelta(days=30)
	lock_ttl: timedelta = timedelta(seconds=30)
	resync_interval: float = 300.0
	store_backend: str = "kube"
	kube_proxy_url: str = ""
	listen_host: str = "0.0.0.0"
	listen_port: int = 12000
	log_level: str = "INFO"

	@property
	def runs_controller(self) -> bool:
		return self.mode in ("monitor", "all")

	@property
	def runs_responder(self) -> bool:
		return self.mode in ("serve", "all")


_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _unquote(value: str) -> str:
	"""Value part of a dotenv line: quoted verbatim, otherwise up to a `` #`` comment."""
	value = value.strip()
	if len(value) >= 2 and value[0] in "\"'":
		closing = value.find(value[0], 1)
		if closing > 0:
			return value[1:closing]
	return value.partition(" #")[0].strip()


def read_dotenv(path: Path) -> dict[str, str]:
	"""Parse ``KEY=VALUE`` lines; ``export`` prefixes and comments are allowed."""
	pairs: dict[str, str] = {}
	for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
		line = line.strip()
		if not line or line.startswith("#"):
			continue
		key, sep, value = line.partition("=")
		key = key.strip()
		if key.startswith("export "):
			key = key[len("export "):].strip()
		if not sep or not key:
			_log.debug("CONFIG %s:%d ignored, not KEY=VALUE", path.name, lineno)
			continue
		pairs[key] = _unquote(value)
	return pairs


def load_dotenv(path: Path | None = None) -> None:
	"""Export ``settings.env`` into the environment without overriding set variables."""
	path = path or _PROJECT_ROOT / "settings.env"
	if not path.is_file():
		return
	for key, value in read_dotenv(path).items():
		os.environ.setdefault(key, value)


def _env_str(name: str, default: str) -> str:
	return os.getenv(name, default).strip()


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
	raw = os.getenv(name, "").strip()
	if not raw:
		return default
	try:
		value = int(raw)
	except ValueError as exc:
		raise ConfigValidationError(f"{name} must be an integer, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{name} must be >= {minimum}, got {value}")
	return value


def _validate(cfg: Config) -> None:
	if cfg.mode not in MODES:
		raise ConfigValidationError(f"ACME_SECRETS_MODE must be one of {MODES}, got {cfg.mode!r}")
	if cfg.store_backend not in STORE_BACKENDS:
		raise ConfigValidationError(
			f"STORE_BACKEND must be one of {STORE_BACKENDS}, got {cfg.store_backend!r}"
		)
	if cfg.runs_controller and not cfg.acme_email:
		raise ConfigValidationError(
			"ACME_EMAIL is required when the controller runs (account contact)"
		)
	if not cfg.acme_namespace:
		raise ConfigValidationError("ACME_NAMESPACE must not be empty")


def _prepare_data_dir(raw: str) -> Path:
	data_dir = Path(raw).resolve()
	if data_dir.exists() and not data_dir.is_dir():
		raise ConfigValidationError(f"ACME_DATA_DIR {data_dir} is not a directory")
	try:
		data_dir.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"ACME_DATA_DIR {data_dir} cannot be created: {exc}") from exc
	return data_dir


def load_config() -> Config:
	"""Build the Config from the environment, after merging ``settings.env``."""
	load_dotenv()

	log_level = _env_str("LOG_LEVEL", "INFO").upper()
	if log_level not in _LOG_LEVELS:
		log_level = "INFO"

	cfg = Config(
		data_dir=_prepare_data_dir(_env_str("ACME_DATA_DIR", str(_PROJECT_ROOT / "data"))),
		mode=_env_str("ACME_SECRETS_MODE", "all").lower(),
		acme_server=_env_str("ACME_SERVER", ACME_DIRECTORY_STAGING),
		acme_email=_env_str("ACME_EMAIL", ""),
		acme_key_size=_env_int("ACME_KEY_SIZE", 2048, minimum=2048),
		acme_namespace=_env_str("ACME_NAMESPACE", "acme"),
		watch_namespace=_env_str("WATCH_NAMESPACE", "default"),
		renewal_threshold=timedelta(days=_env_int("RENEWAL_THRESHOLD_DAYS", 30)),
		lock_ttl=timedelta(seconds=_env_int("LOCK_TTL_SECONDS", 30, minimum=1)),
		resync_interval=float(_env_int("RESYNC_INTERVAL_SECONDS", 300, minimum=1)),
		store_backend=_env_str("STORE_BACKEND", "kube").lower(),
		kube_proxy_url=_env_str("KUBE_PROXY_URL", ""),
		listen_host=_env_str("LISTEN_HOST", "0.0.0.0"),
		listen_port=_env_int("LISTEN_PORT", 12000, minimum=1),
		log_level=log_level,
	)
	_validate(cfg)
	if cfg.acme_server != ACME_DIRECTORY_PROD:
		_log.debug("CONFIG ACME directory %s is not Let's Encrypt production", cfg.acme_server)
	return cfg
