#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# acme-secrets - ACME certificate controller
# Entry point: --monitor runs the controller, --serve the challenge responder
#

import argparse
import os

import uvicorn
from acmesecrets.utils.config import ConfigValidationError, load_config

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# uvicorn gets the same line format as the application loggers
_UVICORN_LOG_CONFIG: dict = {
	"version": 1,
	"disable_existing_loggers": False,
	"formatters": {
		"default": {"format": _LOG_FORMAT, "datefmt": _DATE_FORMAT},
		"access": {"format": _LOG_FORMAT, "datefmt": _DATE_FORMAT},
	},
	"handlers": {
		"default": {
			"formatter": "default",
			"class": "logging.StreamHandler",
			"stream": "ext://sys.stderr",
		},
		"access": {
			"formatter": "access",
			"class": "logging.StreamHandler",
			"stream": "ext://sys.stdout",
		},
	},
	"loggers": {
		"uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
		"uvicorn.error": {"level": "INFO"},
		"uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
	},
}


def _parse_args(argv=None) -> argparse.Namespace:
	parser = argparse.ArgumentParser(description="ACME certificate controller and HTTP-01 responder")
	parser.add_argument("--monitor", action="store_true", help="run the ingress controller")
	parser.add_argument("--serve", action="store_true", help="run the challenge responder")
	parser.add_argument("--host", help="listen address (default: LISTEN_HOST)")
	parser.add_argument("--port", type=int, help="listen port (default: LISTEN_PORT)")
	return parser.parse_args(argv)


def _mode(args: argparse.Namespace) -> str | None:
	if args.monitor and args.serve:
		return "all"
	if args.monitor:
		return "monitor"
	if args.serve:
		return "serve"
	return None


if __name__ == "__main__":
	args = _parse_args()
	mode = _mode(args)
	if mode:
		# The factory reads its configuration from the environment
		os.environ["ACME_SECRETS_MODE"] = mode

	try:
		cfg = load_config()
	except ConfigValidationError as exc:
		raise SystemExit(f"configuration error: {exc}")

	_level = cfg.log_level.upper()
	for _logger in _UVICORN_LOG_CONFIG["loggers"].values():
		_logger["level"] = _level

	uvicorn.run(
		"acmesecrets:create_app",
		host=args.host or cfg.listen_host,
		port=args.port or cfg.listen_port,
		factory=True,
		log_config=_UVICORN_LOG_CONFIG,
	)
