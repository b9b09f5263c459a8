from dataclasses import replace
from typing import Any, List, Optional

from dashboard_backend.config import BASE_DIR, Settings
from dashboard_backend.documents import rows_to_document
from dashboard_backend.providers import ModelReply, ToolCall

SALES_ROWS = [
    ["Region", "Rev", "Qty"],
    ["Asia", 10, 1],
    ["EU", 20, 2],
    ["Asia", 5, 3],
]


def make_settings(**overrides: Any) -> Settings:
    settings = Settings(
        gemini_api_key="test-key",
        gemini_model="gemini-test",
        gemini_fallback_model="gemini-fallback",
        openai_api_key="",
        openai_model="gpt-test",
        anthropic_api_key="",
        anthropic_model="claude-test",
        model_temperature=0.0,
        model_timeout=5.0,
        history_limit=20,
        history_path=None,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        weather_api_key="",
        weather_api_base="https://weather.test",
        mediamtx_control_base="http://mediamtx.test:9997",
        mediamtx_user="admin",
        mediamtx_pass="admin",
        mediamtx_hls_base="http://hls.test:8888",
        mediamtx_webrtc_base="http://webrtc.test:8889",
        stream_ready_timeout=3.0,
        stream_poll_interval=1.0,
    )
    return replace(settings, **overrides)


def sales_document():
    return rows_to_document(SALES_ROWS)


def tool_reply(name: str, text: str = "", **args: Any) -> ModelReply:
    return ModelReply(text=text, tool_calls=[ToolCall(name=name, args=args)])


class FakeProvider:
    """Scripted provider: each generate() pops the next reply or raises it."""

    def __init__(self, replies: List[Any], json_mode: bool = False, name: str = "gemini", answer: str = "42 rows") -> None:
        self.name = name
        self.json_mode = json_mode
        self.replies = list(replies)
        self.answer = answer
        self.calls: List[dict] = []
        self.text_prompts: List[str] = []

    def generate(self, contents: List[dict], tools: Optional[List[dict]] = None, model: Optional[str] = None) -> ModelReply:
        self.calls.append({"contents": contents, "tools": tools, "model": model})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        self.text_prompts.append(prompt)
        return self.answer

    def last_prompt(self) -> str:
        return self.calls[-1]["contents"][-1]["parts"][0]["text"]
