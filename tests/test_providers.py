import unittest
from types import SimpleNamespace
from unittest.mock import Mock

from dashboard_backend.errors import ModelInvocationError
from dashboard_backend.gemini_client import _normalize_model_name, reply_from_response, to_plain
from dashboard_backend.pipeline_runtime import PipelineRunner, PipelineStep
from dashboard_backend.providers import ProviderRegistry, to_chat_messages

from tests.support import make_settings


class GeminiResponseTests(unittest.TestCase):
    def test_collects_text_and_function_calls(self) -> None:
        parts = [
            SimpleNamespace(text="Here is your chart.", function_call=None),
            SimpleNamespace(
                text="",
                function_call=SimpleNamespace(name="create_chart", args={"title": "Sales", "data": [{"label": "A", "value": 1}]}),
            ),
        ]
        response = SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])

        reply = reply_from_response(response)

        self.assertEqual(reply.text, "Here is your chart.")
        self.assertEqual(reply.tool_calls[0].name, "create_chart")
        self.assertEqual(reply.tool_calls[0].args["data"], [{"label": "A", "value": 1}])

    def test_no_candidates_is_empty_reply(self) -> None:
        reply = reply_from_response(SimpleNamespace(candidates=[]))

        self.assertEqual(reply.text, "")
        self.assertEqual(reply.tool_calls, [])

    def test_to_plain_and_model_names(self) -> None:
        self.assertEqual(to_plain({"a": ({"b": 1},)}), {"a": [{"b": 1}]})
        self.assertEqual(_normalize_model_name(" models/gemini-2.5-flash "), "gemini-2.5-flash")
        self.assertEqual(_normalize_model_name(None), "")


class ChatMessageConversionTests(unittest.TestCase):
    def test_roles_are_mapped_and_merged(self) -> None:
        contents = [
            {"role": "model", "parts": [{"text": "earlier answer"}]},
            {"role": "user", "parts": [{"text": "q1"}]},
            {"role": "user", "parts": [{"text": "q2"}]},
        ]

        messages = to_chat_messages(contents)

        self.assertEqual([m["role"] for m in messages], ["user", "assistant", "user"])
        self.assertEqual(messages[2]["content"], "q1\n\nq2")


class ProviderRegistryTests(unittest.TestCase):
    def test_builds_each_provider_once_and_defaults_to_gemini(self) -> None:
        factory = Mock(return_value="gemini-client")
        registry = ProviderRegistry(make_settings(), factories={"gemini": factory})

        self.assertEqual(registry.get(None), "gemini-client")
        self.assertEqual(registry.get("mystery"), "gemini-client")
        factory.assert_called_once()
        self.assertEqual(registry.fallback_model, "gemini-fallback")

    def test_missing_api_key_is_invocation_error(self) -> None:
        registry = ProviderRegistry(make_settings())

        with self.assertRaises(ModelInvocationError):
            registry.get("openai")


class PipelineRunnerTests(unittest.TestCase):
    def test_skip_if_and_always_run_after_failure(self) -> None:
        ran = []

        def fail(_context) -> None:
            ran.append("fail")
            raise RuntimeError("boom")

        runner = PipelineRunner(
            [
                PipelineStep("first", lambda _: ran.append("first")),
                PipelineStep("skipped", lambda _: ran.append("skipped"), skip_if=lambda _: True),
                PipelineStep("fail", fail),
                PipelineStep("after", lambda _: ran.append("after")),
                PipelineStep("finalize", lambda _: ran.append("finalize"), always_run=True),
            ]
        )

        with self.assertRaises(RuntimeError):
            runner.run(SimpleNamespace())

        self.assertEqual(ran, ["first", "fail", "finalize"])
        self.assertEqual(runner.step_names, ["first", "skipped", "fail", "after", "finalize"])


if __name__ == "__main__":
    unittest.main()
