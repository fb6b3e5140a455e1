from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, File, Request, UploadFile

from proxy.backend.config import load_settings
from proxy.backend.errors import InputValidationError
from proxy.backend.response import success_response
from proxy.backend.schemas import ErrorEnvelope, UploadResponse
from proxy.backend.services import upload_service
from proxy.backend.services.upstream_client import UpstreamClient


router = APIRouter(prefix="/api", tags=["upload"])


@router.post(
	"/upload",
	response_model=UploadResponse,
	responses={code: {"model": ErrorEnvelope} for code in (400, 413, 500, 502)},
)
def upload(request: Request, file: Optional[UploadFile] = File(default=None)):
	if file is None:
		raise InputValidationError(step="read_upload", message="No file uploaded.")
	settings = load_settings()
	# one byte over the cap is enough to reject
	content = file.file.read(settings.max_upload_bytes + 1)
	with UpstreamClient.from_settings(settings) as upstream:
		result = upload_service.upload(
			upstream,
			filename=file.filename or "",
			content=content,
			content_type=file.content_type or "",
			max_bytes=settings.max_upload_bytes,
			timeout_s=settings.upload_poll_timeout_s,
		)
	return success_response(
		request=request,
		file_id=result.file_id,
		file=result.as_dict(),
		processed=result.processed,
	)
