from unittest import TestCase

from proxy.backend import constants
from proxy.backend.config import ProxySettings
from proxy.backend.services import instruction_service
from proxy.backend.services.instruction_service import PersonaCache
from tests.upstream_stub import FakeProvider


class PersonaLoadingTests(TestCase):
	def setUp(self) -> None:
		self.provider = FakeProvider()
		self.upstream = self.provider.upstream()
		self.cache = PersonaCache()

	def tearDown(self) -> None:
		self.upstream.close()

	def test_fetched_persona_is_cached_within_ttl(self) -> None:
		first = instruction_service.load_persona(self.upstream, "asst_test", ttl_s=300, cache=self.cache, now=1000.0)
		second = instruction_service.load_persona(self.upstream, "asst_test", ttl_s=300, cache=self.cache, now=1200.0)
		self.assertEqual(first, "You are the test persona.")
		self.assertEqual(second, first)
		self.assertEqual(len(self.provider.called("get_assistant")), 1)

	def test_stale_persona_is_fetched_again(self) -> None:
		instruction_service.load_persona(self.upstream, "asst_test", ttl_s=300, cache=self.cache, now=1000.0)
		self.provider.persona = "Updated persona."
		refreshed = instruction_service.load_persona(self.upstream, "asst_test", ttl_s=300, cache=self.cache, now=1301.0)
		self.assertEqual(refreshed, "Updated persona.")
		self.assertEqual(len(self.provider.called("get_assistant")), 2)

	def test_fetch_failure_falls_back_without_caching(self) -> None:
		self.provider.failures["get_assistant"] = (404, '{"error":{"message":"No assistant found"}}')
		persona = instruction_service.load_persona(self.upstream, "asst_test", cache=self.cache, now=1000.0)
		self.assertEqual(persona, constants.DEFAULT_PERSONA)
		self.assertFalse(self.cache.is_fresh(1000.0, 300))

	def test_empty_instructions_fall_back(self) -> None:
		self.provider.persona = "   "
		persona = instruction_service.load_persona(self.upstream, "asst_test", cache=self.cache, now=1000.0)
		self.assertEqual(persona, constants.DEFAULT_PERSONA)

	def test_missing_assistant_id_skips_fetch(self) -> None:
		persona = instruction_service.load_persona(self.upstream, "", cache=self.cache, now=1000.0)
		self.assertEqual(persona, constants.DEFAULT_PERSONA)
		self.assertEqual(self.provider.calls, [])

	def test_attachment_names_fall_back_to_file_id(self) -> None:
		self.provider.files["file_abc"] = {"id": "file_abc", "filename": "care_plan.pdf", "bytes": 10}
		names = instruction_service.attachment_names(self.upstream, ["file_abc", "file_xyz"])
		self.assertEqual(names, ["care_plan.pdf", "file_xyz.pdf"])

		self.provider.failures["get_file"] = (404, "missing")
		self.assertEqual(instruction_service.attachment_names(self.upstream, ["file_gone"]), ["file_gone"])


class ComposeTests(TestCase):
	def test_persona_then_grounding_policy(self) -> None:
		composed = instruction_service.compose("Base persona.", False)
		self.assertTrue(composed.startswith("Base persona.\n\n"))
		self.assertIn(constants.NO_SOURCES_REPLY, composed)
		self.assertNotIn("Files attached to this message", composed)

	def test_attachment_directive_comes_last_and_names_files(self) -> None:
		composed = instruction_service.compose("Base persona.", True, ["file_abc.pdf", "rota.xlsx"])
		last = composed.split("\n\n")[-1]
		self.assertIn("file_abc.pdf, rota.xlsx", last)
		self.assertIn("Search these attached files first", last)
		self.assertLess(composed.index(constants.GROUNDING_POLICY), composed.index(last))

	def test_grounding_policy_can_be_switched_off(self) -> None:
		composed = instruction_service.compose("Base persona.", False, grounding=False)
		self.assertEqual(composed, "Base persona.")

	def test_build_instructions_uses_settings(self) -> None:
		provider = FakeProvider()
		instruction_service.PERSONA_CACHE.clear()
		settings = ProxySettings(openai_api_key="test-key", assistant_id="asst_test", grounding_policy=False)
		with provider.upstream() as upstream:
			composed = instruction_service.build_instructions(upstream, settings, ["file_abc"])
		instruction_service.PERSONA_CACHE.clear()
		self.assertTrue(composed.startswith("You are the test persona."))
		self.assertNotIn(constants.NO_SOURCES_REPLY, composed)
		self.assertIn("file_abc.pdf", composed)
