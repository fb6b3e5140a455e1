from __future__ import annotations

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from proxy.backend import constants
from proxy.backend.config import load_settings, require_credentials
from proxy.backend.errors import InputValidationError
from proxy.backend.response import success_response
from proxy.backend.schemas import AssistantAnswer, AssistantTurnRequest, ErrorEnvelope
from proxy.backend.services import run_service
from proxy.backend.services.upstream_client import UpstreamClient


router = APIRouter(prefix="/api", tags=["assistant"])

_ERROR_RESPONSES = {code: {"model": ErrorEnvelope} for code in (400, 500, 502, 504)}


def _stream_requested(value: Optional[str]) -> bool:
	return value is not None and value.strip().lower() != "off"


def _load_body(raw: bytes) -> Dict[str, Any]:
	if not raw:
		return {}
	try:
		data = json.loads(raw)
	except ValueError:
		return {}
	return data if isinstance(data, dict) else {}


def parse_turn(raw: bytes) -> run_service.Turn:
	try:
		payload = AssistantTurnRequest.model_validate(_load_body(raw))
	except ValidationError as exc:
		fields = ", ".join(".".join(str(part) for part in issue.get("loc", [])) for issue in exc.errors())
		raise InputValidationError(message=f"Invalid request fields: {fields}") from exc
	if not payload.user_message and not payload.attachments:
		raise InputValidationError(message="userMessage (string) required")
	return run_service.Turn(
		text=payload.user_message,
		attachment_ids=list(payload.attachments),
		thread_id=payload.thread_id,
		history=[item.model_dump() for item in payload.history],
	)


@router.post("/assistant", response_model=AssistantAnswer, responses=_ERROR_RESPONSES)
async def assistant(request: Request, stream: Optional[str] = None):
	turn = parse_turn(await request.body())
	settings = load_settings()
	require_credentials(settings)
	upstream = UpstreamClient.from_settings(settings)

	if not _stream_requested(stream):
		try:
			thread_id, answer = await run_in_threadpool(run_service.run_turn, upstream, settings, turn, "poll")
		finally:
			upstream.close()
		return success_response(request=request, thread_id=thread_id, **answer.as_dict())

	try:
		_thread_id, handle = await run_in_threadpool(run_service.run_turn, upstream, settings, turn, "stream")
	except Exception:
		upstream.close()
		raise
	handle.on_close = upstream.close
	return StreamingResponse(
		handle.events(),
		media_type="text/event-stream; charset=utf-8",
		headers=dict(constants.SSE_HEADERS),
	)
