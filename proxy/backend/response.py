from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request


def _request_id(request: Optional[Request]) -> Optional[str]:
	if request is None:
		return None
	return getattr(request.state, "request_id", None)


def success_response(*, request: Optional[Request] = None, **fields: Any) -> Dict[str, Any]:
	payload: Dict[str, Any] = {"ok": True}
	payload.update(fields)
	request_id = _request_id(request)
	if request_id:
		payload["request_id"] = request_id
	return payload


def error_response(
	*,
	step: str,
	message: str,
	request: Optional[Request] = None,
	extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
	payload: Dict[str, Any] = {
		"ok": False,
		"step": step,
		"error": message,
	}
	if extra:
		payload.update(extra)
	request_id = _request_id(request)
	if request_id:
		payload["request_id"] = request_id
	return payload
