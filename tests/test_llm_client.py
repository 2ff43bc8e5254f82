from types import SimpleNamespace

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from storyflow.app_config import is_openai_model, model_for_feature, parse_model_name
from storyflow.llm_client import ChatLlmClient, LlmClient, MaxRetryErrorsException, call_with_retries_sync


class FakeCompletions:
    def __init__(self, text):
        self.text = text
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.text))],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=5, total_tokens=17),
        )


def fake_openai(text):
    completions = FakeCompletions(text)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def test_parse_model_name():
    assert parse_model_name("gpt-4o") == ("gpt-4o", {})
    assert parse_model_name("gpt-4o_t0.3_json") == (
        "gpt-4o",
        {"temperature": 0.3, "response_format": {"type": "json_object"}},
    )
    with pytest.raises(ValueError):
        parse_model_name("gpt-4o_fast")
    with pytest.raises(ValueError):
        parse_model_name("  ")


def test_model_selection():
    assert is_openai_model("gpt-4o-mini")
    assert not is_openai_model("gemini-1.5-pro")
    assert model_for_feature("chat_suggestions") == "gpt-4o-mini"
    assert model_for_feature("something_new") == "gpt-4o"


def test_retries_until_success():
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise RuntimeError("connection reset")
        return "ok"

    assert call_with_retries_sync(flaky, retries=3) == "ok"
    assert len(attempts) == 2


def test_retries_exhausted():
    logged = []

    def broken():
        raise RuntimeError("still broken")

    with pytest.raises(MaxRetryErrorsException) as exc_info:
        call_with_retries_sync(broken, retries=2, log=logged.append)
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert len(logged) == 2


def test_openai_completion_call(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    llm = LlmClient("gpt-4o_t0.2", vertex_project="demo", vertex_region="us-central1")
    llm._client, completions = fake_openai("  A reply.  ")

    assert llm.invoke("Say hi", json_mode=True, max_tokens=50, retries=1) == "A reply."
    assert completions.kwargs["model"] == "gpt-4o"
    assert completions.kwargs["temperature"] == 0.2
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    assert completions.kwargs["max_tokens"] == 50
    assert llm.get_accrued_usage()["total_token_count"] == 17


def test_chat_messages_are_mapped_to_roles(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    chat = ChatLlmClient("gpt-4o", vertex_project="demo", vertex_region="us-central1")
    chat._client, completions = fake_openai('{"status": "question"}')

    chat.invoke([SystemMessage(content="rules"), HumanMessage(content="hi"), AIMessage(content="hello")], retries=1)

    assert completions.kwargs["messages"] == [
        {"role": "system", "content": "rules"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]
    assert "response_format" not in completions.kwargs
