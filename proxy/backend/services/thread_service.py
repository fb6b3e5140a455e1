from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog

from proxy.backend.errors import UpstreamError, UpstreamStepError
from proxy.backend.services.upstream_client import UpstreamClient


logger = structlog.get_logger()


def _seed_messages(history: Optional[List[Dict[str, str]]]) -> List[Dict[str, Any]]:
	seeded: List[Dict[str, Any]] = []
	for item in history or []:
		role = item.get("role")
		content = str(item.get("content") or "").strip()
		if role not in {"user", "assistant"} or not content:
			continue
		seeded.append({"role": role, "content": content})
	return seeded


def resolve(
	upstream: UpstreamClient,
	thread_id: Optional[str],
	history: Optional[List[Dict[str, str]]] = None,
) -> str:
	"""Return a usable thread id, creating a thread when none was supplied.

	A supplied id is trusted without checking it exists; the first call that
	uses it will fail if it does not. Prior ``history`` only seeds new threads.
	"""
	if thread_id:
		return thread_id
	try:
		thread = upstream.create_thread(_seed_messages(history))
	except UpstreamError as exc:
		raise UpstreamStepError.from_upstream("create_thread", exc) from exc
	created = str(thread.get("id") or "")
	if not created:
		raise UpstreamStepError(step="create_thread", message="create_thread failed: response carried no thread id")
	logger.info("Thread created", thread_id=created)
	return created
