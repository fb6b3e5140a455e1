from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import structlog

from proxy.backend import constants
from proxy.backend.config import ProxySettings
from proxy.backend.errors import UpstreamError
from proxy.backend.services.upstream_client import UpstreamClient


logger = structlog.get_logger()


@dataclass
class PersonaCache:
	value: str = ""
	fetched_at: float = 0.0

	def is_fresh(self, now: float, ttl_s: float) -> bool:
		return bool(self.value) and ttl_s > 0 and (now - self.fetched_at) < ttl_s

	def store(self, value: str, now: float) -> None:
		self.value = value
		self.fetched_at = now

	def clear(self) -> None:
		self.value = ""
		self.fetched_at = 0.0


PERSONA_CACHE = PersonaCache()


def load_persona(
	upstream: UpstreamClient,
	assistant_id: str,
	*,
	ttl_s: float = constants.DEFAULT_PERSONA_TTL_S,
	cache: Optional[PersonaCache] = None,
	now: Optional[float] = None,
) -> str:
	"""Return the assistant's configured instructions, or the built-in persona.

	A failed or empty fetch is never an error. The built-in persona is not
	cached so the next request tries the provider again.
	"""
	cache = PERSONA_CACHE if cache is None else cache
	current = time.monotonic() if now is None else now
	if cache.is_fresh(current, ttl_s):
		return cache.value
	if not assistant_id:
		return constants.DEFAULT_PERSONA
	try:
		assistant = upstream.get_assistant(assistant_id)
	except UpstreamError as exc:
		logger.warning("Persona fetch failed, using default", assistant_id=assistant_id, status=exc.status)
		return constants.DEFAULT_PERSONA
	instructions = assistant.get("instructions")
	if not isinstance(instructions, str) or not instructions.strip():
		return constants.DEFAULT_PERSONA
	persona = instructions.strip()
	cache.store(persona, current)
	return persona


def attachment_names(upstream: UpstreamClient, file_ids: Sequence[str]) -> List[str]:
	names: List[str] = []
	for file_id in file_ids:
		try:
			meta = upstream.get_file(file_id)
		except UpstreamError as exc:
			logger.debug("Attachment name lookup failed", file_id=file_id, status=exc.status)
			names.append(file_id)
			continue
		filename = meta.get("filename")
		names.append(filename.strip() if isinstance(filename, str) and filename.strip() else file_id)
	return names


def compose(
	base_persona: str,
	has_attachments: bool,
	names: Sequence[str] = (),
	*,
	grounding: bool = True,
) -> str:
	sections = [base_persona.strip()] if base_persona.strip() else []
	if grounding:
		sections.append(constants.GROUNDING_POLICY)
	if has_attachments:
		listed = ", ".join(name for name in names if name) or "see attachments"
		sections.append(
			f"Files attached to this message: {listed}. "
			"Search these attached files first, before the general knowledge base."
		)
	return "\n\n".join(sections)


def build_instructions(
	upstream: UpstreamClient,
	settings: ProxySettings,
	attachment_ids: Sequence[str],
) -> str:
	persona = load_persona(upstream, settings.assistant_id, ttl_s=settings.persona_ttl_s)
	names = attachment_names(upstream, attachment_ids) if attachment_ids else []
	return compose(
		persona,
		bool(attachment_ids),
		names,
		grounding=settings.grounding_policy,
	)
