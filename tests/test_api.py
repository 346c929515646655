import importlib
import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from latin_backend.providers import ChatReply


def _reload_backend_app(monkeypatch: pytest.MonkeyPatch, *, db_path: Path, **env: str):
    """テスト用に latin_backend.* を再読み込みし、新しい DB と設定で app を作る。"""

    monkeypatch.setenv("LATIN_DB_PATH", str(db_path))
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    # latin_backend.* を一度破棄して設定と永続層のキャッシュをリセット
    for name in list(sys.modules.keys()):
        if name == "latin_backend" or name.startswith("latin_backend."):
            sys.modules.pop(name)

    importlib.import_module("latin_backend.config")
    importlib.import_module("latin_backend.store")
    return importlib.import_module("latin_backend.main")


def _seed_words(store) -> None:
    amicus = store.add_word(1, "amicus", "friend")
    store.add_word(1, "servus", "slave")
    store.add_word(1, "dominus", "master")
    store.add_word(1, "villa", "house")
    store.add_word(2, "convenio", "to come together, meet")
    store.add_example_sentence(amicus, "Amicus in villa est.", "The friend is in the house.", 1)
    store.add_example_sentence(amicus, "Servus laborat.", "The slave works.", 1)


@pytest.fixture()
def app_module(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    backend_main = _reload_backend_app(monkeypatch, db_path=tmp_path / "latin.sqlite3")
    _seed_words(sys.modules["latin_backend.store"].store)
    return backend_main


@pytest.fixture()
def client(app_module):
    return TestClient(app_module.app)


def test_health(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers.get("X-Request-ID")


def test_runtime_config(client):
    resp = client.get("/api/config", headers={"X-User-Id": "alice"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["user_id"] == "alice"
    assert "matching" in body["study_modes"]
    assert body["ai_providers"] == ["anthropic", "google", "openai"]


def test_vocab_lists_and_detail(client):
    lists = client.get("/api/vocab/lists").json()["lists"]
    assert lists == [{"list_number": 1, "word_count": 4}, {"list_number": 2, "word_count": 1}]

    words = client.get("/api/vocab/lists/1").json()["words"]
    assert [w["latin"] for w in words] == ["amicus", "servus", "dominus", "villa"]

    detail = client.get("/api/vocab/1").json()
    assert detail["word"]["english"] == "friend"
    assert len(detail["examples"]) == 2

    assert client.get("/api/vocab/lists/9").status_code == 404
    assert client.get("/api/vocab/999").status_code == 404


def test_cloze_items_skip_sentences_without_the_word(client):
    body = client.get("/api/vocab/1/cloze").json()
    assert body["items"] == [
        {
            "example_id": 1,
            "sentence": "_____ in villa est.",
            "english_translation": "The friend is in the house.",
        }
    ]


def test_choices_include_answer(client):
    body = client.get("/api/vocab/1/choices").json()
    assert body["latin"] == "amicus"
    assert len(body["options"]) == 4
    assert "friend" in body["options"]
    assert set(body["options"]) <= {"friend", "slave", "master", "house"}


def test_rate_then_recent_and_stats(client):
    headers = {"X-User-Id": "alice"}
    resp = client.post("/api/review/rate", json={"vocab_id": 1, "rating": "good"}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["quality"] == 4
    assert body["schedule"]["interval"] == 1
    assert body["schedule"]["status"] == "learning"
    assert body["schedule"]["xp"] == 12
    assert body["xp_total"] == 12
    assert body["interval_text"] == "1 day"

    recent = client.get("/api/review/recent", headers=headers).json()
    assert recent["count"] == 1
    assert recent["items"][0]["word"]["latin"] == "amicus"
    assert recent["items"][0]["progress"]["repetitions"] == 1

    # 翌日まで出題されない
    assert client.get("/api/review/due", headers=headers).json()["count"] == 0

    stats = client.get("/api/review/stats", headers=headers).json()
    assert stats["by_status"]["learning"] == 1
    assert stats["by_status"]["new"] == 4
    assert stats["reviewed_today"] == 1

    # 他の利用者には影響しない
    other = client.get("/api/review/recent", headers={"X-User-Id": "bob"}).json()
    assert other["count"] == 0
    assert client.get("/api/profile", headers={"X-User-Id": "bob"}).json()["xp_points"] == 0


def test_failed_rating_requeues_in_one_minute(client):
    body = client.post("/api/review/rate", json={"vocab_id": 2, "rating": "again"}).json()
    assert body["correct"] is False
    assert body["schedule"]["interval"] == 0
    assert body["interval_text"] == "1m"
    assert body["xp_total"] == 0


@pytest.mark.parametrize("quality", [6, -1, 2.5, "4", True, None])
def test_invalid_quality_returns_422(client, quality):
    resp = client.post("/api/review/answer", json={"vocab_id": 1, "quality": quality})
    assert resp.status_code == 422


def test_valid_quality_answer(client):
    resp = client.post("/api/review/answer", json={"vocab_id": 1, "quality": 5})
    assert resp.status_code == 200
    assert resp.json()["schedule"]["ease_factor"] == pytest.approx(2.6)


def test_unknown_rating_returns_422_with_message(client):
    resp = client.post("/api/review/rate", json={"vocab_id": 1, "rating": "perfect"})
    assert resp.status_code == 422
    assert "rating must be one of" in resp.json()["detail"]


def test_unknown_word_returns_404(client):
    resp = client.post("/api/review/rate", json={"vocab_id": 999, "rating": "good"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "vocabulary 999 not found"


def test_check_typing_answer(client):
    resp = client.post(
        "/api/review/check",
        json={"vocab_id": 5, "mode": "typing", "answer": "to come together"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["correct"] is True
    assert body["quality"] == 4
    assert body["expected"] == "to come together, meet"


def test_check_wrong_choice(client):
    body = client.post(
        "/api/review/check",
        json={"vocab_id": 1, "mode": "multiple_choice", "answer": "slave"},
    ).json()
    assert body["correct"] is False
    assert body["quality"] == 1


def test_session_flow_with_match(client):
    headers = {"X-User-Id": "carol"}
    started = client.post(
        "/api/sessions", json={"mode": "flashcard", "list_number": 1}, headers=headers
    )
    assert started.status_code == 201
    session_id = started.json()["id"]

    client.post(
        "/api/review/rate",
        json={"vocab_id": 1, "rating": "easy", "session_id": session_id},
        headers=headers,
    )
    client.post(
        "/api/review/rate",
        json={"vocab_id": 2, "rating": "again", "session_id": session_id},
        headers=headers,
    )
    match = client.post("/api/review/match", json={"session_id": session_id}, headers=headers)
    assert match.json() == {"xp": 15, "xp_total": 30}

    finished = client.post(f"/api/sessions/{session_id}/finish", headers=headers).json()
    assert finished["words_reviewed"] == 2
    assert finished["correct_count"] == 1
    assert finished["xp_earned"] == 30
    assert finished["ended_at"] is not None

    assert client.get(f"/api/sessions/{session_id}", headers=headers).status_code == 200
    assert client.get(f"/api/sessions/{session_id}", headers={"X-User-Id": "dave"}).status_code == 404
    missing = client.post(
        "/api/review/rate",
        json={"vocab_id": 1, "rating": "good", "session_id": "nope"},
        headers=headers,
    )
    assert missing.status_code == 404


def test_match_without_body(client):
    resp = client.post("/api/review/match")
    assert resp.status_code == 200
    assert resp.json() == {"xp": 15, "xp_total": 15}


def test_profile_daily_goal(client):
    assert client.get("/api/profile").json()["daily_goal"] == 20
    resp = client.put("/api/profile/daily-goal", json={"daily_goal": 40})
    assert resp.json()["daily_goal"] == 40
    assert client.put("/api/profile/daily-goal", json={"daily_goal": 0}).status_code == 422


def test_interval_text_endpoint(client):
    assert client.get("/api/review/interval-text", params={"days": 14}).json() == {
        "days": 14.0,
        "text": "2 weeks",
    }
    assert client.get("/api/review/interval-text", params={"days": 2.5}).json()["text"] == "2.5 days"


def test_internal_key_error_is_a_server_error_not_404(app_module, monkeypatch):
    review_router = sys.modules["latin_backend.routers.review"]

    def _broken(*_args, **_kwargs):
        raise KeyError("ease_factor")

    monkeypatch.setattr(review_router.flow, "answer_with_rating", _broken)
    client = TestClient(app_module.app, raise_server_exceptions=False)

    assert client.post("/api/review/rate", json={"vocab_id": 1, "rating": "good"}).status_code == 500
    missing = client.post("/api/review/check", json={"vocab_id": 999, "mode": "typing", "answer": "x"})
    assert missing.status_code == 404
    assert missing.json() == {"detail": "vocabulary 999 not found"}


def test_metrics_include_paths_and_answers(client):
    client.post("/api/review/rate", json={"vocab_id": 1, "rating": "good"})
    body = client.get("/metrics").json()
    assert "/api/review/rate" in body["paths"]
    assert body["answers"]["flashcard"]["answers"] >= 1


def test_startup_seeds_vocabulary_from_jsonl(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    seed = tmp_path / "vocab.jsonl"
    seed.write_text(
        "\n".join(
            json.dumps(entry)
            for entry in [
                {"list": 1, "latin": "puella", "english": "girl"},
                {
                    "list": 1,
                    "latin": "mater",
                    "english": "mother",
                    "examples": [
                        {"latin_sentence": "Mater sedet.", "english_translation": "The mother sits."}
                    ],
                },
            ]
        ),
        encoding="utf-8",
    )
    backend_main = _reload_backend_app(
        monkeypatch, db_path=tmp_path / "seeded.sqlite3", VOCAB_SEED_PATH=str(seed)
    )
    with TestClient(backend_main.app) as seeded:
        assert seeded.get("/api/vocab/lists").json()["lists"] == [
            {"list_number": 1, "word_count": 2}
        ]
        assert len(seeded.get("/api/vocab/2").json()["examples"]) == 1


class _FakeChatClient:
    def __init__(self, calls: list, provider: str, model: str, *, fail: bool = False) -> None:
        self._calls = calls
        self.provider = provider
        self.model = model
        self._fail = fail

    def complete(self, messages):
        self._calls.append({"provider": self.provider, "model": self.model, "messages": messages})
        if self._fail:
            raise RuntimeError("upstream exploded")
        return ChatReply(content="Amicus means friend.", tokens_used=21)

    def verify_key(self) -> bool:
        return self.provider == "openai"


def test_ai_providers_and_key_format(client):
    providers = client.get("/api/ai/providers").json()["providers"]
    assert [p["id"] for p in providers] == ["openai", "anthropic", "google"]
    assert providers[1]["default_model"] == "claude-sonnet-4-20250514"

    check = client.post("/api/ai/validate-key", json={"provider": "anthropic", "api_key": "sk-abc"})
    assert check.json() == {"provider": "anthropic", "valid": False, "checked_remote": False}
    check = client.post("/api/ai/validate-key", json={"provider": "google", "api_key": "AIzaSy123"})
    assert check.json()["valid"] is True


def test_validate_key_remote_check(app_module, client, monkeypatch: pytest.MonkeyPatch):
    ai_router = sys.modules["latin_backend.routers.ai"]
    calls: list = []
    monkeypatch.setattr(
        ai_router,
        "get_chat_client",
        lambda provider, key, model: _FakeChatClient(calls, provider, model),
    )

    body = client.post(
        "/api/ai/validate-key",
        json={"provider": "openai", "api_key": "sk-live", "check_remote": True},
    ).json()

    assert body == {"provider": "openai", "valid": True, "checked_remote": True}


def test_ai_settings_roundtrip_masks_keys(client):
    headers = {"X-User-Id": "erin"}
    empty = client.get("/api/ai/settings", headers=headers).json()
    assert empty["providers"]["openai"]["configured"] is False

    resp = client.put(
        "/api/ai/settings",
        json={"openai_api_key": "sk-proj-1234567890abcd", "openai_model": "gpt-4o-mini"},
        headers=headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["providers"]["openai"] == {
        "configured": True,
        "api_key_hint": "sk-...abcd",
        "model": "gpt-4o-mini",
    }
    assert "1234567890" not in resp.text

    bad = client.put("/api/ai/settings", json={"anthropic_api_key": "sk-wrong"}, headers=headers)
    assert bad.status_code == 422

    cleared = client.put("/api/ai/settings", json={"openai_api_key": ""}, headers=headers).json()
    assert cleared["providers"]["openai"]["configured"] is False


def test_chat_without_settings_returns_400(client):
    resp = client.post("/api/ai/chat", json={"message": "Salve!"}, headers={"X-User-Id": "frank"})
    assert resp.status_code == 400
    assert "API key" in resp.json()["detail"]


def test_chat_uses_configured_provider_and_records_history(
    app_module, client, monkeypatch: pytest.MonkeyPatch
):
    ai_router = sys.modules["latin_backend.routers.ai"]
    calls: list = []
    monkeypatch.setattr(
        ai_router.chat_flow,
        "_client_factory",
        lambda provider, key, model: _FakeChatClient(calls, provider, model),
    )
    headers = {"X-User-Id": "gina"}
    client.put(
        "/api/ai/settings",
        json={"default_provider": "anthropic", "anthropic_api_key": "sk-ant-secret-key-0001"},
        headers=headers,
    )
    history = [
        {"role": "user" if i % 2 == 0 else "assistant", "content": f"message {i}"}
        for i in range(14)
    ]

    resp = client.post(
        "/api/ai/chat",
        json={"message": "What does amicus mean?", "history": history},
        headers=headers,
    )

    assert resp.status_code == 200
    assert resp.json() == {
        "message": "Amicus means friend.",
        "provider": "anthropic",
        "model": "claude-sonnet-4-20250514",
        "tokens_used": 21,
    }
    sent = calls[0]["messages"]
    assert sent[0]["role"] == "system"
    assert "Latin tutor" in sent[0]["content"]
    assert [m["content"] for m in sent[1:-1]] == [f"message {i}" for i in range(4, 14)]
    assert sent[-1] == {"role": "user", "content": "What does amicus mean?"}

    saved = client.get("/api/ai/history", headers=headers).json()["items"]
    assert len(saved) == 1
    assert saved[0]["provider_used"] == "anthropic"
    assert saved[0]["messages"][1]["content"] == "Amicus means friend."


def test_chat_provider_failure_returns_502(app_module, client, monkeypatch: pytest.MonkeyPatch):
    ai_router = sys.modules["latin_backend.routers.ai"]
    monkeypatch.setattr(
        ai_router.chat_flow,
        "_client_factory",
        lambda provider, key, model: _FakeChatClient([], provider, model, fail=True),
    )
    headers = {"X-User-Id": "hank"}
    client.put("/api/ai/settings", json={"openai_api_key": "sk-test-000000000"}, headers=headers)

    resp = client.post("/api/ai/chat", json={"message": "Salve"}, headers=headers)

    assert resp.status_code == 502
    assert client.get("/api/ai/history", headers=headers).json()["items"] == []
