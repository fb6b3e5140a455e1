from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from proxy.backend import constants


PayloadShape = Literal["messages_list", "structured_response", "unknown"]
CitationKind = Literal["file", "file_path", "url"]

_TEXT_PART_TYPES = {"text", "output_text"}


@dataclass
class Citation:
	kind: CitationKind
	file_id: Optional[str] = None
	quote: Optional[str] = None
	path: Optional[str] = None
	url: Optional[str] = None

	def key(self) -> Tuple[str, str]:
		if self.kind == "url":
			return (self.kind, self.url or "")
		return (self.kind, f"{self.file_id or ''}:{self.path or ''}")

	def as_dict(self) -> Dict[str, Any]:
		if self.kind == "url":
			return {"kind": "url", "url": self.url}
		payload: Dict[str, Any] = {"kind": self.kind, "file_id": self.file_id}
		if self.kind == "file" and self.quote:
			payload["quote"] = self.quote
		if self.kind == "file_path" and self.path:
			payload["path"] = self.path
		return payload


@dataclass
class NormalizedAnswer:
	text: str = ""
	citations: List[Citation] = field(default_factory=list)
	usage: Optional[Dict[str, Any]] = None

	def as_dict(self) -> Dict[str, Any]:
		return {
			"text": self.text,
			"citations": [citation.as_dict() for citation in self.citations],
			"usage": self.usage,
		}


def detect_shape(payload: Any) -> PayloadShape:
	if isinstance(payload, list):
		return "messages_list"
	if not isinstance(payload, dict):
		return "unknown"
	if isinstance(payload.get("data"), list):
		return "messages_list"
	if isinstance(payload.get("output"), list) or isinstance(payload.get("output_text"), str):
		return "structured_response"
	return "unknown"


def _part_text_and_annotations(part: Dict[str, Any]) -> Tuple[str, List[Any]]:
	text = part.get("text")
	annotations = part.get("annotations")
	if isinstance(text, dict):
		annotations = text.get("annotations", annotations)
		text = text.get("value")
	if not isinstance(text, str):
		text = ""
	if not isinstance(annotations, list):
		annotations = []
	return text, annotations


def _citation_from_annotation(annotation: Any) -> Optional[Citation]:
	if not isinstance(annotation, dict):
		return None
	url = annotation.get("url")
	url_citation = annotation.get("url_citation")
	if not isinstance(url, str) and isinstance(url_citation, dict):
		url = url_citation.get("url")
	if isinstance(url, str) and url:
		return Citation(kind="url", url=url)
	file_path = annotation.get("file_path")
	if isinstance(file_path, dict) and file_path.get("file_id"):
		path = file_path.get("path")
		return Citation(kind="file_path", file_id=str(file_path["file_id"]), path=path if isinstance(path, str) else None)
	file_citation = annotation.get("file_citation")
	if isinstance(file_citation, dict) and file_citation.get("file_id"):
		quote = file_citation.get("quote")
		return Citation(kind="file", file_id=str(file_citation["file_id"]), quote=quote if isinstance(quote, str) else None)
	return None


def _strip_markers(text: str, annotations: List[Any]) -> str:
	spans: List[Tuple[int, int]] = []
	literals: List[str] = []
	for annotation in annotations:
		if not isinstance(annotation, dict):
			continue
		start = annotation.get("start_index")
		end = annotation.get("end_index")
		if isinstance(start, int) and isinstance(end, int) and 0 <= start < end <= len(text):
			spans.append((start, end))
		elif isinstance(annotation.get("text"), str) and annotation["text"]:
			literals.append(annotation["text"])
	for start, end in sorted(set(spans), reverse=True):
		text = text[:start] + text[end:]
	for literal in literals:
		text = text.replace(literal, "")
	return text


def _dedupe(citations: List[Citation], limit: int) -> List[Citation]:
	seen = set()
	unique: List[Citation] = []
	for citation in citations:
		key = citation.key()
		if key in seen:
			continue
		seen.add(key)
		unique.append(citation)
		if len(unique) >= limit:
			break
	return unique


def _messages(payload: Any) -> List[Any]:
	if isinstance(payload, list):
		return payload
	return payload.get("data") or []


def _from_messages_list(payload: Any, max_citations: int) -> Tuple[str, List[Citation]]:
	for message in _messages(payload):
		if not isinstance(message, dict) or message.get("role") != "assistant":
			continue
		content = message.get("content")
		if not isinstance(content, list):
			continue
		parts = [part for part in content if isinstance(part, dict) and part.get("type") in _TEXT_PART_TYPES]
		if not parts:
			continue
		texts: List[str] = []
		citations: List[Citation] = []
		for part in parts:
			text, annotations = _part_text_and_annotations(part)
			for annotation in annotations:
				citation = _citation_from_annotation(annotation)
				if citation is not None:
					citations.append(citation)
			cleaned = _strip_markers(text, annotations).strip()
			if cleaned:
				texts.append(cleaned)
		return "\n".join(texts), _dedupe(citations, max_citations)
	return "", []


def _from_structured_response(payload: Dict[str, Any]) -> str:
	parts: List[str] = []
	for item in payload.get("output") or []:
		if not isinstance(item, dict) or item.get("type", "message") != "message":
			continue
		content = item.get("content")
		if not isinstance(content, list):
			continue
		for chunk in content:
			if isinstance(chunk, dict) and chunk.get("type") == "output_text":
				text, _annotations = _part_text_and_annotations(chunk)
				if text:
					parts.append(text)
	if parts:
		return "".join(parts).strip()
	output_text = payload.get("output_text")
	return output_text.strip() if isinstance(output_text, str) else ""


def _fallback_text(payload: Any) -> str:
	if isinstance(payload, dict) and isinstance(payload.get("text"), str):
		return payload["text"].strip()
	return ""


def extract(
	payload: Any,
	usage: Optional[Dict[str, Any]] = None,
	*,
	max_citations: int = constants.DEFAULT_MAX_CITATIONS,
) -> NormalizedAnswer:
	"""Reduce a provider payload to text, citations and usage.

	Handles a messages list (``{"data": [...]}``) and a structured response
	(``{"output": [...]}``). Never raises; unknown payloads give empty text.
	"""
	shape = detect_shape(payload)
	text = ""
	citations: List[Citation] = []
	if shape == "messages_list":
		text, citations = _from_messages_list(payload, max_citations)
	elif shape == "structured_response":
		text = _from_structured_response(payload)
	if not text:
		text = _fallback_text(payload)
	if usage is None and isinstance(payload, dict) and isinstance(payload.get("usage"), dict):
		usage = payload["usage"]
	return NormalizedAnswer(text=text, citations=citations, usage=usage)
