from __future__ import annotations

from typing import Any, Dict


class UpstreamError(Exception):
	"""A provider call returned a non-success status or never completed.

	``status`` is the provider HTTP status, or 0 when the request did not reach
	the provider. ``raw_body`` holds the response text as sent by the provider.
	"""

	def __init__(self, *, status: int, raw_body: str, path: str = ""):
		super().__init__(f"{path or 'upstream'} failed: {status} {raw_body}".strip())
		self.status = status
		self.raw_body = raw_body
		self.path = path


class ProxyError(Exception):
	status_code = 500
	default_step = "internal"

	def __init__(self, *, message: str, step: str | None = None, status_code: int | None = None):
		super().__init__(message)
		self.message = message
		self.step = step or self.default_step
		if status_code is not None:
			self.status_code = status_code

	def extra(self) -> Dict[str, Any]:
		return {}


class ConfigurationError(ProxyError):
	status_code = 500
	default_step = "config"


class InputValidationError(ProxyError):
	status_code = 400
	default_step = "validate_input"


class UpstreamStepError(ProxyError):
	status_code = 502

	def __init__(self, *, step: str, message: str, upstream_status: int = 0, raw_body: str = ""):
		super().__init__(message=message, step=step)
		self.upstream_status = upstream_status
		self.raw_body = raw_body

	@classmethod
	def from_upstream(cls, step: str, exc: UpstreamError) -> "UpstreamStepError":
		return cls(
			step=step,
			message=f"{step} failed: {exc.status} {exc.raw_body}".strip(),
			upstream_status=exc.status,
			raw_body=exc.raw_body,
		)


class RunTimeoutError(ProxyError):
	status_code = 504
	default_step = "poll_run"

	def __init__(self, *, thread_id: str, run_id: str, message: str = "Timeout waiting for run to complete."):
		super().__init__(message=message)
		self.thread_id = thread_id
		self.run_id = run_id

	def extra(self) -> Dict[str, Any]:
		return {"thread_id": self.thread_id, "run_id": self.run_id}


class StreamOpenError(ProxyError):
	status_code = 502
	default_step = "create_run_stream"


class PayloadTooLargeError(ProxyError):
	status_code = 413
	default_step = "read_upload"
