from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Literal, Tuple

from proxy.backend import constants
from proxy.backend.errors import ConfigurationError


StreamFraming = Literal["passthrough", "synthesized"]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class ProxySettings:
	openai_api_key: str
	assistant_id: str
	openai_base_url: str = constants.DEFAULT_OPENAI_BASE_URL
	openai_timeout_s: float = constants.DEFAULT_OPENAI_TIMEOUT_S
	cors_allow_origins: List[str] = field(default_factory=lambda: list(constants.DEFAULT_CORS_ALLOW_ORIGINS))
	persist_message: bool = True
	stream_framing: StreamFraming = "passthrough"
	grounding_policy: bool = True
	poll_interval_s: float = constants.DEFAULT_POLL_INTERVAL_MS / 1000.0
	poll_timeout_s: float = float(constants.DEFAULT_POLL_TIMEOUT_S)
	poll_max_iterations: int = constants.DEFAULT_POLL_MAX_ITERATIONS
	persona_ttl_s: float = float(constants.DEFAULT_PERSONA_TTL_S)
	max_citations: int = constants.DEFAULT_MAX_CITATIONS
	max_upload_bytes: int = constants.DEFAULT_MAX_UPLOAD_BYTES
	upload_poll_timeout_s: float = float(constants.DEFAULT_UPLOAD_POLL_TIMEOUT_S)
	log_level: str = "info"
	log_format: str = "console"


def _env(*names: str) -> str:
	for name in names:
		raw = os.getenv(name, "").strip()
		if raw:
			return raw
	return ""


def _int_env(name: str, default: int, minimum: int = 0) -> int:
	raw = _env(name)
	if not raw:
		return default
	try:
		value = int(raw)
	except ValueError as exc:
		raise ConfigurationError(message=f"{name} must be an integer.") from exc
	if value < minimum:
		raise ConfigurationError(message=f"{name} must be at least {minimum}.")
	return value


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
	raw = _env(name)
	if not raw:
		return default
	try:
		value = float(raw)
	except ValueError as exc:
		raise ConfigurationError(message=f"{name} must be numeric.") from exc
	if value < minimum:
		raise ConfigurationError(message=f"{name} must be at least {minimum:g}.")
	return value


def _flag_env(name: str, default: bool) -> bool:
	raw = _env(name).lower()
	if not raw:
		return default
	if raw in _TRUE_VALUES:
		return True
	if raw in _FALSE_VALUES:
		return False
	raise ConfigurationError(message=f"{name} must be one of: on, off.")


def cors_origins() -> List[str]:
	raw = _env("PROXY_CORS_ALLOW_ORIGIN", "CORS_ALLOW_ORIGIN")
	origins = [item.strip() for item in raw.split(",") if item.strip()]
	return origins or list(constants.DEFAULT_CORS_ALLOW_ORIGINS)


def log_options() -> Tuple[str, str]:
	return (_env("PROXY_LOG_LEVEL").lower() or "info", _env("PROXY_LOG_FORMAT").lower() or "console")


def _stream_framing() -> StreamFraming:
	raw = _env("PROXY_STREAM_FRAMING").lower() or "passthrough"
	if raw not in {"passthrough", "synthesized"}:
		raise ConfigurationError(message="PROXY_STREAM_FRAMING must be one of: passthrough, synthesized.")
	return raw  # type: ignore[return-value]


def load_settings() -> ProxySettings:
	log_level, log_format = log_options()
	return ProxySettings(
		openai_api_key=_env("OPENAI_API_KEY"),
		assistant_id=_env("OPENAI_ASSISTANT_ID", "ASSISTANT_ID"),
		openai_base_url=_env("OPENAI_BASE_URL") or constants.DEFAULT_OPENAI_BASE_URL,
		openai_timeout_s=_float_env("PROXY_OPENAI_TIMEOUT_S", constants.DEFAULT_OPENAI_TIMEOUT_S, minimum=1.0),
		cors_allow_origins=cors_origins(),
		persist_message=_flag_env("PROXY_PERSIST_MESSAGE", True),
		stream_framing=_stream_framing(),
		grounding_policy=_flag_env("PROXY_GROUNDING_POLICY", True),
		poll_interval_s=_int_env("PROXY_POLL_INTERVAL_MS", constants.DEFAULT_POLL_INTERVAL_MS) / 1000.0,
		poll_timeout_s=_float_env("PROXY_POLL_TIMEOUT_S", float(constants.DEFAULT_POLL_TIMEOUT_S), minimum=1.0),
		poll_max_iterations=_int_env("PROXY_POLL_MAX_ITERATIONS", constants.DEFAULT_POLL_MAX_ITERATIONS, minimum=1),
		persona_ttl_s=_float_env("PROXY_PERSONA_TTL_S", float(constants.DEFAULT_PERSONA_TTL_S)),
		max_citations=_int_env("PROXY_MAX_CITATIONS", constants.DEFAULT_MAX_CITATIONS, minimum=1),
		max_upload_bytes=_int_env("PROXY_MAX_UPLOAD_BYTES", constants.DEFAULT_MAX_UPLOAD_BYTES, minimum=1),
		upload_poll_timeout_s=_float_env(
			"PROXY_UPLOAD_POLL_TIMEOUT_S",
			float(constants.DEFAULT_UPLOAD_POLL_TIMEOUT_S),
		),
		log_level=log_level,
		log_format=log_format,
	)


def require_api_key(settings: ProxySettings) -> str:
	if not settings.openai_api_key:
		raise ConfigurationError(message="Missing OPENAI_API_KEY.")
	return settings.openai_api_key


def require_credentials(settings: ProxySettings) -> None:
	if not settings.openai_api_key or not settings.assistant_id:
		raise ConfigurationError(message="Missing OPENAI_API_KEY or OPENAI_ASSISTANT_ID.")
