from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from proxy.backend import constants
from proxy.backend.errors import PayloadTooLargeError, UpstreamError, UpstreamStepError
from proxy.backend.services.upstream_client import UpstreamClient


logger = structlog.get_logger()


@dataclass
class UploadResult:
	file_id: str
	filename: str
	size_bytes: int
	status: str
	processed: bool

	def as_dict(self) -> Dict[str, Any]:
		return {
			"id": self.file_id,
			"filename": self.filename,
			"bytes": self.size_bytes,
			"status": self.status,
		}


def check_size(content: bytes, max_bytes: int) -> None:
	if len(content) > max_bytes:
		limit_mb = max_bytes / (1024 * 1024)
		raise PayloadTooLargeError(message=f"File too large ({limit_mb:g} MB max).")


def wait_processed(
	upstream: UpstreamClient,
	file_id: str,
	*,
	timeout_s: float = constants.DEFAULT_UPLOAD_POLL_TIMEOUT_S,
	interval_s: float = constants.UPLOAD_POLL_INTERVAL_S,
	sleep: Callable[[float], None] = time.sleep,
	clock: Callable[[], float] = time.monotonic,
) -> tuple[bool, Optional[Dict[str, Any]]]:
	"""Poll file metadata until processed, errored, or the time budget runs out."""
	started = clock()
	meta: Optional[Dict[str, Any]] = None
	while clock() - started < timeout_s:
		try:
			meta = upstream.get_file(file_id)
		except UpstreamError as exc:
			logger.warning("File status check failed", file_id=file_id, status=exc.status)
			break
		status = meta.get("status")
		if status == "processed":
			return True, meta
		if status == "error":
			return False, meta
		sleep(interval_s)
	return False, meta


def upload(
	upstream: UpstreamClient,
	*,
	filename: str,
	content: bytes,
	content_type: str,
	max_bytes: int = constants.DEFAULT_MAX_UPLOAD_BYTES,
	timeout_s: float = constants.DEFAULT_UPLOAD_POLL_TIMEOUT_S,
	sleep: Callable[[float], None] = time.sleep,
) -> UploadResult:
	check_size(content, max_bytes)
	name = filename.strip() or "upload.bin"
	try:
		uploaded = upstream.upload_file(
			filename=name,
			content=content,
			content_type=content_type or "application/octet-stream",
		)
	except UpstreamError as exc:
		raise UpstreamStepError.from_upstream("upload_file", exc) from exc
	file_id = str(uploaded.get("id") or "")
	if not file_id:
		raise UpstreamStepError(step="upload_file", message="upload_file failed: response carried no file id")

	processed, meta = wait_processed(upstream, file_id, timeout_s=timeout_s, sleep=sleep)
	meta = meta or {}
	status = "processed" if processed else str(meta.get("status") or uploaded.get("status") or "uploaded")
	size = meta.get("bytes") or uploaded.get("bytes") or len(content)
	logger.info("File uploaded", file_id=file_id, status=status, processed=processed)
	return UploadResult(
		file_id=file_id,
		filename=name,
		size_bytes=int(size),
		status=status,
		processed=processed,
	)
