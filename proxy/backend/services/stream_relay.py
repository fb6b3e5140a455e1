from __future__ import annotations

import codecs
import json
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Tuple

import structlog

from proxy.backend import constants
from proxy.backend.config import StreamFraming


logger = structlog.get_logger()

CloseFn = Callable[[], None]


def encode_sse(event: str, data: Any) -> str:
	payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
	lines = payload.split("\n") or [""]
	body = "".join(f"data: {line}\n" for line in lines)
	return f"event: {event}\n{body}\n"


def iter_frames(chunks: Iterable[bytes]) -> Iterator[str]:
	"""Split an upstream byte stream into complete SSE frames.

	A frame is yielded as soon as its terminating blank line arrives. A trailing
	partial frame is yielded when the upstream ends.
	"""
	decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
	buffer = ""
	for chunk in chunks:
		if not chunk:
			continue
		buffer += decoder.decode(chunk)
		# a trailing CR may be the first half of a CRLF
		held = ""
		if buffer.endswith("\r"):
			buffer, held = buffer[:-1], "\r"
		buffer = buffer.replace("\r\n", "\n").replace("\r", "\n")
		while "\n\n" in buffer:
			frame, buffer = buffer.split("\n\n", 1)
			if frame.strip():
				yield frame
		buffer += held
	buffer += decoder.decode(b"", final=True)
	buffer = buffer.replace("\r\n", "\n").replace("\r", "\n")
	if buffer.strip():
		yield buffer.strip("\n")


def parse_frame(frame: str) -> Tuple[str, str]:
	event = "message"
	data_lines = []
	for line in frame.split("\n"):
		if line.startswith(":"):
			continue
		name, _, value = line.partition(":")
		if value.startswith(" "):
			value = value[1:]
		if name == "event":
			event = value.strip() or "message"
		elif name == "data":
			data_lines.append(value)
	return event, "\n".join(data_lines)


def _is_upstream_done(event: str, data: str) -> bool:
	return data.strip() == constants.STREAM_DONE_PAYLOAD or event == "done"


def _close_quietly(close: Optional[CloseFn]) -> None:
	if close is None:
		return
	try:
		close()
	except Exception as exc:
		logger.debug("Upstream close failed", error=str(exc))


def relay(
	chunks: Iterable[bytes],
	*,
	framing: StreamFraming = "passthrough",
	start_payload: Optional[Dict[str, Any]] = None,
	close: Optional[CloseFn] = None,
) -> Iterator[str]:
	"""Forward upstream SSE frames to the client, framed by start and done.

	``passthrough`` forwards each upstream frame unchanged; ``synthesized``
	re-encodes it as ``event``/``data`` lines. Either way the output ends with
	exactly one ``done`` frame carrying ``[DONE]``, and ``close`` is called.
	"""
	try:
		yield encode_sse("start", start_payload or {"ok": True})
		try:
			for frame in iter_frames(chunks):
				event, data = parse_frame(frame)
				if _is_upstream_done(event, data):
					continue
				if framing == "passthrough":
					yield f"{frame}\n\n"
				elif data:
					yield encode_sse(event, data)
		except Exception as exc:
			logger.warning("Upstream stream broke", error=str(exc))
			yield encode_sse("error", {"ok": False, "step": "stream", "error": str(exc) or exc.__class__.__name__})
		yield encode_sse("done", constants.STREAM_DONE_PAYLOAD)
	except GeneratorExit:
		logger.debug("Client disconnected mid-stream")
		raise
	finally:
		_close_quietly(close)


def relay_failure(
	*,
	step: str,
	error: str,
	start_payload: Optional[Dict[str, Any]] = None,
) -> Iterator[str]:
	yield encode_sse("start", start_payload or {"ok": True})
	yield encode_sse("error", {"ok": False, "step": step, "error": error})
	yield encode_sse("done", constants.STREAM_DONE_PAYLOAD)
