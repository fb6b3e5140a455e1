from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI, Stream

from proxy.backend import constants
from proxy.backend.config import ProxySettings, require_api_key
from proxy.backend.errors import UpstreamError


logger = structlog.get_logger()

_METHODS = {"GET", "POST", "DELETE"}


def _build_openai_client(
	*,
	api_key: str,
	base_url: str,
	timeout_s: float,
	http_client: Optional[httpx.Client] = None,
) -> OpenAI:
	return OpenAI(
		api_key=api_key,
		base_url=base_url,
		timeout=timeout_s,
		max_retries=0,
		default_headers={"OpenAI-Beta": constants.OPENAI_BETA_HEADER},
		http_client=http_client,
	)


def _status_error(exc: APIStatusError, path: str) -> UpstreamError:
	try:
		raw = exc.response.text
	except Exception:
		raw = ""
	return UpstreamError(status=exc.status_code, raw_body=raw or str(exc.message), path=path)


def _transport_error(exc: APIConnectionError, path: str) -> UpstreamError:
	status = 504 if isinstance(exc, APITimeoutError) else 0
	return UpstreamError(status=status, raw_body=str(exc.message), path=path)


def _decode(response: httpx.Response, path: str) -> Dict[str, Any]:
	try:
		data = response.json()
	except ValueError as exc:
		raise UpstreamError(status=response.status_code, raw_body=response.text, path=path) from exc
	if isinstance(data, dict):
		return data
	return {"data": data}


class UpstreamClient:
	"""Thin wrapper over the provider's thread, message, run and file endpoints.

	Every call carries bearer auth and the ``OpenAI-Beta: assistants=v2``
	header. Retries are disabled; a failed call surfaces as ``UpstreamError``.
	"""

	def __init__(self, client: OpenAI):
		self._client = client

	@classmethod
	def from_settings(cls, settings: ProxySettings) -> "UpstreamClient":
		client = _build_openai_client(
			api_key=require_api_key(settings),
			base_url=settings.openai_base_url,
			timeout_s=settings.openai_timeout_s,
		)
		return cls(client)

	def __enter__(self) -> "UpstreamClient":
		return self

	def __exit__(self, *_exc_info) -> None:
		self.close()

	def close(self) -> None:
		self._client.close()

	def request(
		self,
		path: str,
		method: str = "GET",
		body: Optional[Mapping[str, Any]] = None,
		headers: Optional[Mapping[str, str]] = None,
		params: Optional[Mapping[str, Any]] = None,
		timeout: Optional[float] = None,
	) -> Dict[str, Any]:
		verb = method.upper()
		if verb not in _METHODS:
			raise ValueError(f"Unsupported upstream method: {method}")
		options: Dict[str, Any] = {}
		if headers:
			options["headers"] = dict(headers)
		if params:
			options["params"] = dict(params)
		if timeout is not None:
			options["timeout"] = timeout
		try:
			if verb == "GET":
				response = self._client.get(path, cast_to=httpx.Response, options=options)
			elif verb == "POST":
				response = self._client.post(path, cast_to=httpx.Response, body=dict(body or {}), options=options)
			else:
				response = self._client.delete(path, cast_to=httpx.Response, options=options)
		except APIStatusError as exc:
			error = _status_error(exc, path)
			logger.warning("Upstream call failed", path=path, method=verb, status=error.status)
			raise error from exc
		except APIConnectionError as exc:
			error = _transport_error(exc, path)
			logger.warning("Upstream unreachable", path=path, method=verb, status=error.status)
			raise error from exc
		return _decode(response, path)

	def create_thread(self, messages: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
		body: Dict[str, Any] = {}
		if messages:
			body["messages"] = messages
		return self.request("/threads", "POST", body)

	def add_message(
		self,
		thread_id: str,
		text: str,
		attachments: Optional[List[Dict[str, Any]]] = None,
	) -> Dict[str, Any]:
		body: Dict[str, Any] = {"role": "user", "content": text}
		if attachments:
			body["attachments"] = attachments
		return self.request(f"/threads/{thread_id}/messages", "POST", body)

	def create_run(self, thread_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
		return self.request(f"/threads/{thread_id}/runs", "POST", payload)

	def get_run(self, thread_id: str, run_id: str, *, timeout: Optional[float] = None) -> Dict[str, Any]:
		return self.request(f"/threads/{thread_id}/runs/{run_id}", timeout=timeout)

	def list_messages(
		self,
		thread_id: str,
		*,
		limit: int = constants.MESSAGE_LIST_LIMIT,
		order: str = "desc",
	) -> Dict[str, Any]:
		return self.request(
			f"/threads/{thread_id}/messages",
			params={"limit": limit, "order": order},
		)

	def get_assistant(self, assistant_id: str) -> Dict[str, Any]:
		return self.request(f"/assistants/{assistant_id}")

	def get_file(self, file_id: str) -> Dict[str, Any]:
		return self.request(f"/files/{file_id}")

	def upload_file(self, *, filename: str, content: bytes, content_type: str) -> Dict[str, Any]:
		path = "/files"
		try:
			uploaded = self._client.files.create(
				file=(filename, content, content_type),
				purpose="assistants",
			)
		except APIStatusError as exc:
			error = _status_error(exc, path)
			logger.warning("Upstream upload failed", path=path, status=error.status)
			raise error from exc
		except APIConnectionError as exc:
			raise _transport_error(exc, path) from exc
		return uploaded.model_dump()

	def open_run_stream(self, thread_id: str, payload: Mapping[str, Any]) -> httpx.Response:
		"""Start a streaming run and return the unread event-stream response.

		The caller owns the response and must close it.
		"""
		path = f"/threads/{thread_id}/runs"
		body = dict(payload)
		body["stream"] = True
		try:
			result = self._client.post(
				path,
				cast_to=httpx.Response,
				body=body,
				options={"headers": {"Accept": "text/event-stream"}},
				stream=True,
				stream_cls=Stream[httpx.Response],
			)
		except APIStatusError as exc:
			error = _status_error(exc, path)
			logger.warning("Upstream stream open failed", path=path, status=error.status)
			raise error from exc
		except APIConnectionError as exc:
			raise _transport_error(exc, path) from exc
		if isinstance(result, httpx.Response):
			return result
		return result.response
