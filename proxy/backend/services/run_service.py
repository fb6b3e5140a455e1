from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional, Union

import httpx
import structlog

from proxy.backend import constants
from proxy.backend.config import ProxySettings, StreamFraming
from proxy.backend.errors import RunTimeoutError, StreamOpenError, UpstreamError, UpstreamStepError
from proxy.backend.services import instruction_service, response_normalizer, stream_relay, thread_service
from proxy.backend.services.response_normalizer import NormalizedAnswer
from proxy.backend.services.upstream_client import UpstreamClient


logger = structlog.get_logger()

RunMode = Literal["poll", "stream"]
PollState = Literal["polling", "completed", "failed", "timed_out"]


@dataclass
class Turn:
	text: str = ""
	attachment_ids: List[str] = field(default_factory=list)
	thread_id: Optional[str] = None
	history: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class Run:
	id: str
	thread_id: str
	status: str
	usage: Optional[Dict[str, Any]] = None

	@classmethod
	def from_payload(cls, payload: Dict[str, Any], thread_id: str) -> "Run":
		usage = payload.get("usage")
		return cls(
			id=str(payload.get("id") or ""),
			thread_id=str(payload.get("thread_id") or thread_id),
			status=str(payload.get("status") or ""),
			usage=usage if isinstance(usage, dict) else None,
		)


@dataclass(frozen=True)
class PollPolicy:
	interval_s: float = constants.DEFAULT_POLL_INTERVAL_MS / 1000.0
	timeout_s: float = float(constants.DEFAULT_POLL_TIMEOUT_S)
	max_iterations: int = constants.DEFAULT_POLL_MAX_ITERATIONS

	@classmethod
	def from_settings(cls, settings: ProxySettings) -> "PollPolicy":
		return cls(
			interval_s=settings.poll_interval_s,
			timeout_s=settings.poll_timeout_s,
			max_iterations=settings.poll_max_iterations,
		)


def poll_transition(status: str, elapsed_s: float, iterations: int, policy: PollPolicy) -> PollState:
	"""Next poll state for an observed run status.

	Terminal provider statuses win over the bounds. Any other status, known or
	not, keeps polling until the wall-time or iteration bound trips.
	"""
	if status == constants.RUN_COMPLETED_STATUS:
		return "completed"
	if status in constants.RUN_FAILED_STATUSES:
		return "failed"
	if elapsed_s >= policy.timeout_s or iterations >= policy.max_iterations:
		return "timed_out"
	return "polling"


def attachment_bindings(file_ids: List[str]) -> List[Dict[str, Any]]:
	return [{"file_id": file_id, "tools": [{"type": "file_search"}]} for file_id in file_ids]


@dataclass
class StreamHandle:
	thread_id: str
	run_id: Optional[str] = None
	response: Optional[httpx.Response] = None
	framing: StreamFraming = "passthrough"
	error: Optional[StreamOpenError] = None
	on_close: Optional[Callable[[], None]] = None

	def _close(self) -> None:
		try:
			if self.response is not None:
				self.response.close()
		finally:
			if self.on_close is not None:
				self.on_close()

	def events(self) -> Iterator[str]:
		start = {"ok": True, "thread_id": self.thread_id}
		if self.response is None:
			try:
				error = self.error or StreamOpenError(message="Stream was not opened.")
				yield from stream_relay.relay_failure(step=error.step, error=error.message, start_payload=start)
			finally:
				self._close()
			return
		yield from stream_relay.relay(
			self.response.iter_bytes(),
			framing=self.framing,
			start_payload=start,
			close=self._close,
		)


SubmitResult = Union[NormalizedAnswer, StreamHandle]


class RunOrchestrator:
	def __init__(
		self,
		upstream: UpstreamClient,
		settings: ProxySettings,
		*,
		sleep: Callable[[float], None] = time.sleep,
		clock: Callable[[], float] = time.monotonic,
	):
		self._upstream = upstream
		self._settings = settings
		self._policy = PollPolicy.from_settings(settings)
		self._sleep = sleep
		self._clock = clock

	def submit(self, thread_id: str, turn: Turn, instructions: str, mode: RunMode) -> SubmitResult:
		persist = self._settings.persist_message and bool(turn.text)
		if persist:
			self._add_message(thread_id, turn)
		payload = self._run_payload(turn, instructions, inline_message=not persist)

		if mode == "stream":
			return self._open_stream(thread_id, payload)

		run = self._create_run(thread_id, payload)
		run = self.poll(run)
		return self._answer(run)

	def poll(self, run: Run) -> Run:
		started = self._clock()
		iterations = 0
		state = poll_transition(run.status, 0.0, iterations, self._policy)
		while state == "polling":
			self._sleep(self._policy.interval_s)
			iterations += 1
			remaining = self._policy.timeout_s - (self._clock() - started)
			if remaining <= 0:
				state = "timed_out"
				break
			run = self._fetch_run(run, remaining)
			state = poll_transition(run.status, self._clock() - started, iterations, self._policy)

		if state == "failed":
			logger.warning("Run ended without completing", run_id=run.id, status=run.status)
			raise UpstreamStepError(step="run", message=f"run ended: {run.status}")
		if state == "timed_out":
			logger.warning(
				"Run poll timed out",
				run_id=run.id,
				thread_id=run.thread_id,
				iterations=iterations,
				status=run.status,
			)
			raise RunTimeoutError(thread_id=run.thread_id, run_id=run.id)
		logger.info("Run completed", run_id=run.id, iterations=iterations)
		return run

	def _fetch_run(self, run: Run, remaining_s: float) -> Run:
		# a status call may not outlive the poll budget
		budget = min(remaining_s, self._settings.openai_timeout_s)
		try:
			payload = self._upstream.get_run(run.thread_id, run.id, timeout=budget)
		except UpstreamError as exc:
			if exc.status == 504 and budget < self._settings.openai_timeout_s:
				logger.warning("Run poll budget spent on a status call", run_id=run.id, thread_id=run.thread_id)
				raise RunTimeoutError(thread_id=run.thread_id, run_id=run.id) from exc
			raise UpstreamStepError.from_upstream("get_run", exc) from exc
		return Run.from_payload(payload, run.thread_id)

	def _add_message(self, thread_id: str, turn: Turn) -> None:
		try:
			self._upstream.add_message(
				thread_id,
				turn.text,
				attachment_bindings(turn.attachment_ids) or None,
			)
		except UpstreamError as exc:
			raise UpstreamStepError.from_upstream("add_message", exc) from exc

	def _run_payload(self, turn: Turn, instructions: str, *, inline_message: bool) -> Dict[str, Any]:
		payload: Dict[str, Any] = {"assistant_id": self._settings.assistant_id}
		if instructions:
			payload["instructions"] = instructions
		if inline_message and (turn.text or turn.attachment_ids):
			message: Dict[str, Any] = {
				"role": "user",
				"content": turn.text or constants.ATTACHMENT_ONLY_PROMPT,
			}
			if turn.attachment_ids:
				message["attachments"] = attachment_bindings(turn.attachment_ids)
			payload["additional_messages"] = [message]
		return payload

	def _create_run(self, thread_id: str, payload: Dict[str, Any]) -> Run:
		try:
			created = self._upstream.create_run(thread_id, payload)
		except UpstreamError as exc:
			raise UpstreamStepError.from_upstream("create_run", exc) from exc
		run = Run.from_payload(created, thread_id)
		if not run.id:
			raise UpstreamStepError(step="create_run", message="create_run failed: response carried no run id")
		return run

	def _open_stream(self, thread_id: str, payload: Dict[str, Any]) -> StreamHandle:
		try:
			response = self._upstream.open_run_stream(thread_id, payload)
		except UpstreamError as exc:
			error = StreamOpenError(message=f"runs/stream failed: {exc.status} {exc.raw_body}".strip())
			logger.warning("Run stream could not be opened", thread_id=thread_id, status=exc.status)
			return StreamHandle(thread_id=thread_id, framing=self._settings.stream_framing, error=error)
		return StreamHandle(thread_id=thread_id, response=response, framing=self._settings.stream_framing)

	def _answer(self, run: Run) -> NormalizedAnswer:
		try:
			messages = self._upstream.list_messages(run.thread_id)
		except UpstreamError as exc:
			raise UpstreamStepError.from_upstream("list_messages", exc) from exc
		data = [item for item in messages.get("data") or [] if isinstance(item, dict)]
		from_run = [item for item in data if item.get("run_id") == run.id]
		return response_normalizer.extract(
			{"data": from_run or data},
			usage=run.usage,
			max_citations=self._settings.max_citations,
		)


def run_turn(
	upstream: UpstreamClient,
	settings: ProxySettings,
	turn: Turn,
	mode: RunMode,
	*,
	sleep: Callable[[float], None] = time.sleep,
) -> tuple[str, SubmitResult]:
	"""Resolve the thread, compose instructions and submit one turn."""
	thread_id = thread_service.resolve(upstream, turn.thread_id, turn.history)
	instructions = instruction_service.build_instructions(upstream, settings, turn.attachment_ids)
	orchestrator = RunOrchestrator(upstream, settings, sleep=sleep)
	return thread_id, orchestrator.submit(thread_id, turn, instructions, mode)
