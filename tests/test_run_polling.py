from unittest import TestCase

from proxy.backend import constants
from proxy.backend.config import ProxySettings
from proxy.backend.errors import RunTimeoutError, UpstreamStepError
from proxy.backend.services import instruction_service, run_service
from proxy.backend.services.run_service import PollPolicy, Run, RunOrchestrator, Turn, poll_transition
from tests.upstream_stub import FakeProvider, assistant_message


class FakeClock:
	def __init__(self) -> None:
		self.now = 0.0
		self.sleeps = []

	def __call__(self) -> float:
		return self.now

	def sleep(self, seconds: float) -> None:
		self.sleeps.append(seconds)
		self.now += seconds


def _settings(**overrides) -> ProxySettings:
	values = {"openai_api_key": "test-key", "assistant_id": "asst_test", "poll_interval_s": 0.8}
	values.update(overrides)
	return ProxySettings(**values)


class PollTransitionTests(TestCase):
	def setUp(self) -> None:
		self.policy = PollPolicy(interval_s=0.8, timeout_s=120.0, max_iterations=180)

	def test_pending_statuses_keep_polling(self) -> None:
		for status in constants.RUN_PENDING_STATUSES:
			self.assertEqual(poll_transition(status, 1.0, 1, self.policy), "polling")

	def test_unknown_status_keeps_polling(self) -> None:
		self.assertEqual(poll_transition("incomplete_soon", 1.0, 1, self.policy), "polling")

	def test_terminal_statuses(self) -> None:
		self.assertEqual(poll_transition("completed", 0.0, 0, self.policy), "completed")
		for status in ("failed", "cancelled", "expired"):
			self.assertEqual(poll_transition(status, 0.0, 0, self.policy), "failed")

	def test_terminal_status_wins_over_exhausted_bounds(self) -> None:
		self.assertEqual(poll_transition("completed", 500.0, 500, self.policy), "completed")

	def test_bounds_trip_timeout(self) -> None:
		self.assertEqual(poll_transition("in_progress", 120.0, 3, self.policy), "timed_out")
		self.assertEqual(poll_transition("queued", 5.0, 180, self.policy), "timed_out")
		self.assertEqual(poll_transition("queued", 119.9, 179, self.policy), "polling")


class OrchestratorPollTests(TestCase):
	def setUp(self) -> None:
		self.provider = FakeProvider()
		self.upstream = self.provider.upstream()
		self.clock = FakeClock()

	def tearDown(self) -> None:
		self.upstream.close()

	def _orchestrator(self, **overrides) -> RunOrchestrator:
		return RunOrchestrator(self.upstream, _settings(**overrides), sleep=self.clock.sleep, clock=self.clock)

	def test_poll_until_completed_returns_answer_with_usage(self) -> None:
		answer = self._orchestrator().submit("thread_1", Turn(text="What is CQC?"), "Be helpful.", "poll")
		self.assertTrue(answer.text.startswith("CQC is the Care Quality Commission"))
		self.assertEqual(answer.usage["total_tokens"], 17)
		self.assertEqual(len(self.provider.called("get_run")), 3)
		self.assertEqual(self.clock.sleeps, [0.8, 0.8, 0.8])
		self.assertEqual(len(self.provider.called("list_messages")), 1)

	def test_failed_run_reports_terminal_status(self) -> None:
		self.provider.run_statuses = ["in_progress", "expired"]
		with self.assertRaises(UpstreamStepError) as ctx:
			self._orchestrator().submit("thread_1", Turn(text="Hi"), "", "poll")
		self.assertEqual(ctx.exception.message, "run ended: expired")
		self.assertEqual(ctx.exception.status_code, 502)
		self.assertEqual(self.provider.called("list_messages"), [])

	def test_iteration_bound_times_out_with_ids(self) -> None:
		self.provider.run_statuses = ["in_progress"]
		orchestrator = self._orchestrator(poll_max_iterations=4)
		with self.assertRaises(RunTimeoutError) as ctx:
			orchestrator.submit("thread_1", Turn(text="Hi"), "", "poll")
		self.assertEqual(ctx.exception.status_code, 504)
		self.assertEqual(ctx.exception.extra(), {"thread_id": "thread_1", "run_id": "run_1"})
		self.assertEqual(len(self.provider.called("get_run")), 4)

	def test_wall_time_bound_times_out(self) -> None:
		self.provider.run_statuses = ["queued"]
		orchestrator = self._orchestrator(poll_interval_s=30.0, poll_timeout_s=60.0)
		with self.assertRaises(RunTimeoutError):
			orchestrator.poll(Run(id="run_1", thread_id="thread_1", status="queued"))
		self.assertEqual(len(self.provider.called("get_run")), 1)

	def test_status_call_is_bounded_by_remaining_budget(self) -> None:
		self.provider.run_statuses = ["completed"]
		orchestrator = self._orchestrator(poll_interval_s=30.0, poll_timeout_s=60.0)
		orchestrator.poll(Run(id="run_1", thread_id="thread_1", status="queued"))
		timeouts = [request.extensions["timeout"]["read"] for request in self.provider.requests]
		self.assertEqual(timeouts, [30.0])

	def test_slow_status_call_past_budget_times_out(self) -> None:
		self.provider.timeouts.append("get_run")
		orchestrator = self._orchestrator(poll_timeout_s=10.0)
		with self.assertRaises(RunTimeoutError) as ctx:
			orchestrator.poll(Run(id="run_1", thread_id="thread_1", status="queued"))
		self.assertEqual(ctx.exception.extra(), {"thread_id": "thread_1", "run_id": "run_1"})

	def test_slow_status_call_within_budget_is_an_upstream_failure(self) -> None:
		self.provider.timeouts.append("get_run")
		with self.assertRaises(UpstreamStepError) as ctx:
			self._orchestrator().poll(Run(id="run_1", thread_id="thread_1", status="queued"))
		self.assertEqual(ctx.exception.step, "get_run")
		self.assertEqual(ctx.exception.upstream_status, 504)

	def test_status_fetch_failure_reports_get_run(self) -> None:
		self.provider.failures["get_run"] = (500, "server error")
		with self.assertRaises(UpstreamStepError) as ctx:
			self._orchestrator().poll(Run(id="run_1", thread_id="thread_1", status="queued"))
		self.assertEqual(ctx.exception.step, "get_run")

	def test_answer_prefers_messages_from_this_run(self) -> None:
		self.provider.messages = [
			assistant_message("Answer from another run.", run_id="run_other"),
			assistant_message("Answer from this run.", run_id="run_1"),
		]
		answer = self._orchestrator().submit("thread_1", Turn(text="Hi"), "", "poll")
		self.assertEqual(answer.text, "Answer from this run.")

	def test_empty_thread_gives_empty_text(self) -> None:
		self.provider.messages = []
		answer = self._orchestrator().submit("thread_1", Turn(text="Hi"), "", "poll")
		self.assertEqual(answer.text, "")
		self.assertEqual(answer.citations, [])


class SubmitPayloadTests(TestCase):
	def setUp(self) -> None:
		self.provider = FakeProvider()
		self.upstream = self.provider.upstream()
		self.clock = FakeClock()

	def tearDown(self) -> None:
		self.upstream.close()

	def test_persisted_message_precedes_run(self) -> None:
		orchestrator = RunOrchestrator(self.upstream, _settings(), sleep=self.clock.sleep, clock=self.clock)
		orchestrator.submit("thread_1", Turn(text="Summarise this", attachment_ids=["file_abc"]), "Be brief.", "poll")
		names = [name for name, _path, _body in self.provider.calls]
		self.assertLess(names.index("add_message"), names.index("create_run"))
		message = self.provider.called("add_message")[0]
		self.assertEqual(message["attachments"], [{"file_id": "file_abc", "tools": [{"type": "file_search"}]}])
		run = self.provider.called("create_run")[0]
		self.assertEqual(run["assistant_id"], "asst_test")
		self.assertEqual(run["instructions"], "Be brief.")
		self.assertNotIn("additional_messages", run)

	def test_inline_message_when_persistence_is_off(self) -> None:
		orchestrator = RunOrchestrator(
			self.upstream,
			_settings(persist_message=False),
			sleep=self.clock.sleep,
			clock=self.clock,
		)
		orchestrator.submit("thread_1", Turn(text="Hello"), "", "poll")
		self.assertEqual(self.provider.called("add_message"), [])
		run = self.provider.called("create_run")[0]
		self.assertEqual(run["additional_messages"], [{"role": "user", "content": "Hello"}])
		self.assertNotIn("instructions", run)

	def test_attachment_only_turn_is_inlined_with_prompt(self) -> None:
		orchestrator = RunOrchestrator(self.upstream, _settings(), sleep=self.clock.sleep, clock=self.clock)
		orchestrator.submit("thread_1", Turn(attachment_ids=["file_abc"]), "", "poll")
		self.assertEqual(self.provider.called("add_message"), [])
		inline = self.provider.called("create_run")[0]["additional_messages"][0]
		self.assertEqual(inline["content"], constants.ATTACHMENT_ONLY_PROMPT)
		self.assertEqual(inline["attachments"][0]["file_id"], "file_abc")

	def test_add_message_failure_stops_before_run(self) -> None:
		self.provider.failures["add_message"] = (400, '{"error":{"message":"Invalid file id"}}')
		orchestrator = RunOrchestrator(self.upstream, _settings(), sleep=self.clock.sleep, clock=self.clock)
		with self.assertRaises(UpstreamStepError) as ctx:
			orchestrator.submit("thread_1", Turn(text="Hi", attachment_ids=["file_bad"]), "", "poll")
		self.assertEqual(ctx.exception.step, "add_message")
		self.assertEqual(self.provider.called("create_run"), [])

	def test_run_turn_resolves_thread_and_composes_instructions(self) -> None:
		instruction_service.PERSONA_CACHE.clear()
		self.addCleanup(instruction_service.PERSONA_CACHE.clear)
		thread_id, answer = run_service.run_turn(
			self.upstream,
			_settings(poll_interval_s=0.0),
			Turn(text="What is CQC?"),
			"poll",
			sleep=self.clock.sleep,
		)
		self.assertEqual(thread_id, "thread_1")
		self.assertIn("Care Quality Commission", answer.text)
		instructions = self.provider.called("create_run")[0]["instructions"]
		self.assertTrue(instructions.startswith("You are the test persona."))
