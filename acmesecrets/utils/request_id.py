#!/usr/bin/env python3
#
# acmesecrets/utils/request_id.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-request correlation id for responder logs."""

from __future__ import annotations

import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
	"""Echo the caller's X-Request-ID (or a fresh uuid4) on every response."""

	async def dispatch(self, request: Request, call_next: Callable) -> Response:
		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
		request.state.request_id = request_id
		response = await call_next(request)
		response.headers[REQUEST_ID_HEADER] = request_id
		return response
