"""AI プロバイダのカタログ・キー形式検査・チャットクライアント・ChatFlow を検証する。"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError

import latin_backend.providers.llm as llm_module
from latin_backend.flows.ai_chat import (
    SYSTEM_PROMPT,
    ChatConfigurationError,
    ChatFlow,
    ChatProviderError,
)
from latin_backend.providers import (
    AI_PROVIDERS,
    ChatClient,
    ChatReply,
    get_model_config,
    get_provider_config,
    validate_api_key_format,
)
from latin_backend.store import AppSQLiteStore


def _fake_response(content: str | None, total_tokens: int = 7):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


def _install_create(client: ChatClient, create) -> None:
    client._client = SimpleNamespace(  # type: ignore[attr-defined]
        chat=SimpleNamespace(completions=SimpleNamespace(create=create)),
        models=SimpleNamespace(list=lambda: []),
    )


def test_catalog_defaults_and_lookup() -> None:
    assert list(AI_PROVIDERS) == ["openai", "anthropic", "google"]
    assert get_provider_config("google").default_model == "gemini-2.0-flash"  # type: ignore[union-attr]
    assert get_provider_config("mistral") is None

    sonnet = get_model_config("anthropic", "claude-sonnet-4-20250514")
    assert sonnet is not None
    assert sonnet.context_window == 200000
    assert sonnet.input_cost_per_million == 3.0
    assert get_model_config("openai", "gpt-2") is None
    assert get_model_config("nope", "gpt-4o") is None


@pytest.mark.parametrize(
    ("provider", "key", "valid"),
    [
        ("openai", "sk-abc", True),
        ("openai", "pk-abc", False),
        ("anthropic", "sk-ant-abc", True),
        ("anthropic", "sk-abc", False),
        ("google", "AIzaSyShort", True),
        ("google", "x" * 31, True),
        ("google", "x" * 30, False),
        ("openai", "", False),
        ("mistral", "sk-abc", False),
    ],
)
def test_validate_api_key_format(provider: str, key: str, valid: bool) -> None:
    assert validate_api_key_format(provider, key) is valid


def test_client_targets_openai_compatible_endpoint() -> None:
    anthropic = ChatClient(provider="anthropic", api_key="sk-ant-x", model="claude-sonnet-4-20250514")
    google = ChatClient(provider="google", api_key="AIza-x", model="gemini-2.0-flash")

    assert str(anthropic._client.base_url) == "https://api.anthropic.com/v1/"
    assert str(google._client.base_url) == "https://generativelanguage.googleapis.com/v1beta/openai/"
    with pytest.raises(ValueError):
        ChatClient(provider="mistral", api_key="k", model="m")


def test_complete_sends_messages_with_token_cap() -> None:
    client = ChatClient(provider="openai", api_key="sk-x", model="gpt-4o")
    captured: dict = {}

    def _create(**kwargs):
        captured.update(kwargs)
        return _fake_response("Salve!", 33)

    _install_create(client, _create)

    reply = client.complete([{"role": "user", "content": "Hello"}])

    assert reply == ChatReply(content="Salve!", tokens_used=33)
    assert captured["model"] == "gpt-4o"
    assert captured["max_tokens"] == 1000
    assert captured["messages"] == [{"role": "user", "content": "Hello"}]


def test_complete_retries_then_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(llm_module.settings, "llm_max_retries", 2)
    client = ChatClient(provider="openai", api_key="sk-x", model="gpt-4o")
    attempts = {"n": 0}

    def _create(**_kwargs):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise RuntimeError("transient")
        return _fake_response(None)

    _install_create(client, _create)

    reply = client.complete([{"role": "user", "content": "Hi"}])

    assert attempts["n"] == 2
    assert reply.content == ""


def test_complete_times_out(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(llm_module.settings, "llm_timeout_ms", 50)
    monkeypatch.setattr(llm_module.settings, "llm_max_retries", 1)
    client = ChatClient(provider="openai", api_key="sk-x", model="gpt-4o")

    def _slow(**_kwargs):
        time.sleep(0.5)
        return _fake_response("late")

    _install_create(client, _slow)

    with pytest.raises(TimeoutError):
        client.complete([{"role": "user", "content": "Hi"}])


def test_verify_key_reports_provider_rejection() -> None:
    client = ChatClient(provider="openai", api_key="sk-x", model="gpt-4o")

    def _fail():
        raise APIConnectionError(request=httpx.Request("GET", "https://api.openai.com/v1/models"))

    client._client = SimpleNamespace(models=SimpleNamespace(list=_fail))  # type: ignore[attr-defined]
    assert client.verify_key() is False

    _install_create(client, lambda **_: None)
    assert client.verify_key() is True


class _RecordingClient:
    def __init__(self, calls: list, reply: str = "Amicus = friend", fail: bool = False) -> None:
        self._calls = calls
        self._reply = reply
        self._fail = fail

    def complete(self, messages):
        self._calls.append(messages)
        if self._fail:
            raise TimeoutError("slow provider")
        return ChatReply(content=self._reply, tokens_used=5)


@pytest.fixture()
def store(tmp_path: Path) -> AppSQLiteStore:
    return AppSQLiteStore(str(tmp_path / "latin.sqlite3"))


def test_chat_flow_requires_configuration(store: AppSQLiteStore) -> None:
    flow = ChatFlow(store, client_factory=lambda p, k, m: _RecordingClient([]))

    with pytest.raises(ChatConfigurationError):
        flow.send("u1", "Salve")

    store.upsert_ai_settings("u1", default_provider="google")
    with pytest.raises(ChatConfigurationError, match="Google AI"):
        flow.send("u1", "Salve")

    store.upsert_ai_settings("u1", google_api_key="AIza-key", ai_chat_enabled=False)
    with pytest.raises(ChatConfigurationError, match="disabled"):
        flow.send("u1", "Salve")


def test_chat_flow_uses_override_provider_and_model(store: AppSQLiteStore) -> None:
    calls: list = []
    used: list = []

    def _factory(provider, key, model):
        used.append((provider, key, model))
        return _RecordingClient(calls)

    store.upsert_ai_settings(
        "u1", openai_api_key="sk-1", google_api_key="AIza-2", google_model="gemini-1.5-pro"
    )
    flow = ChatFlow(store, client_factory=_factory)

    result = flow.send(
        "u1",
        "  What is a gerund?  ",
        history=[{"role": "system", "content": "ignore me"}, {"role": "assistant", "content": "Salve"}],
        provider="google",
        now=datetime(2024, 1, 1, tzinfo=UTC),
    )

    assert used == [("google", "AIza-2", "gemini-1.5-pro")]
    assert result.provider == "google"
    assert result.tokens_used == 5
    assert calls[0] == [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "assistant", "content": "Salve"},
        {"role": "user", "content": "What is a gerund?"},
    ]
    history = store.list_chat_history("u1")
    assert history[0]["messages"][0] == {"role": "user", "content": "What is a gerund?"}


def test_chat_flow_wraps_provider_errors(store: AppSQLiteStore) -> None:
    store.upsert_ai_settings("u1", openai_api_key="sk-1")
    flow = ChatFlow(store, client_factory=lambda p, k, m: _RecordingClient([], fail=True))

    with pytest.raises(ChatProviderError):
        flow.send("u1", "Salve")
    with pytest.raises(ValueError):
        flow.send("u1", "   ")

    assert store.list_chat_history("u1") == []
