from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from proxy.backend import config, constants
from proxy.backend.errors import ProxyError
from proxy.backend.logging_config import configure_logging
from proxy.backend.middleware import PinnedOriginCorsMiddleware, RequestContextMiddleware
from proxy.backend.response import error_response
from proxy.backend.routers import assistant, upload


logger = structlog.get_logger()


def create_app() -> FastAPI:
	configure_logging(*config.log_options())
	app = FastAPI(
		title=constants.APP_NAME,
		version=constants.APP_VERSION,
	)
	_register_middleware(app)
	_register_handlers(app)
	_register_routers(app)
	return app


def _register_middleware(app: FastAPI) -> None:
	app.add_middleware(PinnedOriginCorsMiddleware, allowed_origins=config.cors_origins)
	app.add_middleware(RequestContextMiddleware)


def _register_routers(app: FastAPI) -> None:
	app.include_router(assistant.router)
	app.include_router(upload.router)


def _register_handlers(app: FastAPI) -> None:
	@app.exception_handler(ProxyError)
	async def handle_proxy_error(request: Request, exc: ProxyError) -> JSONResponse:
		if exc.status_code >= 500:
			logger.error("Request failed", step=exc.step, status=exc.status_code, error=exc.message)
		else:
			logger.info("Request rejected", step=exc.step, status=exc.status_code, error=exc.message)
		payload = error_response(
			step=exc.step,
			message=exc.message,
			request=request,
			extra=exc.extra(),
		)
		return JSONResponse(status_code=exc.status_code, content=payload)

	@app.exception_handler(HTTPException)
	async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
		payload = error_response(
			step=f"http_{exc.status_code}",
			message=_exc_message(exc.detail),
			request=request,
		)
		return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

	@app.exception_handler(StarletteHTTPException)
	async def handle_starlette_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
		payload = error_response(
			step=f"http_{exc.status_code}",
			message=_exc_message(exc.detail),
			request=request,
		)
		return JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers)

	@app.exception_handler(RequestValidationError)
	async def handle_request_validation_error(
		request: Request,
		exc: RequestValidationError,
	) -> JSONResponse:
		issues = []
		for issue in exc.errors():
			loc = ".".join(str(part) for part in issue.get("loc", []))
			msg = issue.get("msg", "Invalid request.")
			issues.append(f"{loc}: {msg}" if loc else msg)
		payload = error_response(
			step="validate_input",
			message="; ".join(issues) or "Request validation failed.",
			request=request,
		)
		return JSONResponse(status_code=400, content=payload)

	@app.exception_handler(Exception)
	async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
		logger.exception("Unhandled error", error=str(exc))
		payload = error_response(
			step="internal",
			message="Assistant proxy error",
			request=request,
		)
		return JSONResponse(status_code=500, content=payload)


def _exc_message(detail: Any) -> str:
	if isinstance(detail, str):
		return detail
	if detail is None:
		return "Request failed."
	return str(detail)


app = create_app()
