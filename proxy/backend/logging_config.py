from __future__ import annotations

import logging

import structlog


_LOG_LEVEL_MAP = {
	"debug": logging.DEBUG,
	"info": logging.INFO,
	"warning": logging.WARNING,
	"error": logging.ERROR,
	"critical": logging.CRITICAL,
}


def configure_logging(level: str = "info", log_format: str = "console") -> None:
	processors = [
		structlog.contextvars.merge_contextvars,
		structlog.processors.add_log_level,
		structlog.processors.TimeStamper(fmt="iso"),
	]
	if log_format == "json":
		processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])
	else:
		processors.append(structlog.dev.ConsoleRenderer())
	structlog.configure(
		processors=processors,
		wrapper_class=structlog.make_filtering_bound_logger(_LOG_LEVEL_MAP.get(level.lower(), logging.INFO)),
		context_class=dict,
		logger_factory=structlog.PrintLoggerFactory(),
		cache_logger_on_first_use=False,
	)
