from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HistoryItem(BaseModel):
	model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

	role: Literal["user", "assistant"]
	content: str = ""


class AssistantTurnRequest(BaseModel):
	model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, populate_by_name=True)

	user_message: str = Field(default="", alias="userMessage", description="Text of the user turn.")
	thread_id: Optional[str] = Field(default=None, alias="threadId", description="Thread to continue.")
	history: List[HistoryItem] = Field(default_factory=list)
	attachments: List[str] = Field(default_factory=list, description="Uploaded file ids for this turn.")

	@field_validator("thread_id")
	@classmethod
	def _blank_thread_is_none(cls, value: Optional[str]) -> Optional[str]:
		return value or None

	@field_validator("attachments")
	@classmethod
	def _drop_blank_attachments(cls, value: List[str]) -> List[str]:
		return [item for item in value if item]


class AssistantAnswer(BaseModel):
	model_config = ConfigDict(extra="allow")

	ok: bool
	thread_id: str
	text: str
	citations: List[Dict[str, Any]] = Field(default_factory=list)
	usage: Optional[Dict[str, Any]] = None
	request_id: Optional[str] = None


class ErrorEnvelope(BaseModel):
	model_config = ConfigDict(extra="allow")

	ok: bool = False
	step: str
	error: str
	request_id: Optional[str] = None


class UploadedFile(BaseModel):
	model_config = ConfigDict(extra="forbid")

	id: str
	filename: str
	bytes: int
	status: str


class UploadResponse(BaseModel):
	model_config = ConfigDict(extra="allow")

	ok: bool
	file_id: str
	file: UploadedFile
	processed: bool
	request_id: Optional[str] = None
