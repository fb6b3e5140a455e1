from __future__ import annotations

import time
import uuid
from typing import Callable, Dict, List

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from proxy.backend import constants
from proxy.backend.response import error_response


logger = structlog.get_logger()


class RequestContextMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request: Request, call_next) -> Response:
		request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
		request.state.request_id = request_id
		structlog.contextvars.clear_contextvars()
		structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
		start = time.perf_counter()
		response = await call_next(request)
		process_time = time.perf_counter() - start
		response.headers["X-Request-ID"] = request_id
		response.headers["X-Process-Time"] = f"{process_time:.6f}"
		return response


def pick_origin(request_origin: str, allowed: List[str]) -> str:
	if request_origin and request_origin in allowed:
		return request_origin
	return allowed[0] if allowed else constants.DEFAULT_CORS_ALLOW_ORIGINS[0]


def cors_headers(origin: str) -> Dict[str, str]:
	return {
		"Access-Control-Allow-Origin": origin,
		"Vary": "Origin",
		"Access-Control-Allow-Methods": constants.CORS_ALLOW_METHODS,
		"Access-Control-Allow-Headers": constants.CORS_ALLOW_HEADERS,
		"Access-Control-Max-Age": str(constants.CORS_MAX_AGE_S),
	}


class PinnedOriginCorsMiddleware(BaseHTTPMiddleware):
	"""CORS with the allowed origin pinned to configuration.

	The request's ``Origin`` is echoed only when it is on the allow-list;
	otherwise the first configured origin is sent. Preflights end here with 204.
	Unhandled errors are rendered here too, so a 500 still carries the headers.
	"""

	def __init__(self, app, allowed_origins: Callable[[], List[str]]):
		super().__init__(app)
		self._allowed_origins = allowed_origins

	async def dispatch(self, request: Request, call_next) -> Response:
		headers = cors_headers(pick_origin(request.headers.get("origin", ""), self._allowed_origins()))
		if request.method == "OPTIONS":
			return Response(status_code=204, headers=headers)
		try:
			response = await call_next(request)
		except Exception as exc:
			logger.exception("Unhandled error", error=str(exc))
			payload = error_response(step="internal", message="Assistant proxy error", request=request)
			return JSONResponse(status_code=500, content=payload, headers=headers)
		response.headers.update(headers)
		return response
