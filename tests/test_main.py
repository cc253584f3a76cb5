import pytest
from fastapi.testclient import TestClient

import gemini_service
import main
from relay import STREAM_ERROR_MARKER


def fake_stream(chunks, calls, fail_after=None):
    async def _stream(prompt, history):
        calls.append((prompt, history))
        for index, chunk in enumerate(chunks):
            if fail_after is not None and index == fail_after:
                raise RuntimeError("upstream failure")
            yield chunk
        if fail_after is not None and fail_after >= len(chunks):
            raise RuntimeError("upstream failure")
    return _stream


@pytest.fixture
def client():
    return TestClient(main.app)


def test_streams_plain_text_answer(client, monkeypatch):
    calls = []
    monkeypatch.setattr(main, "stream_answer", fake_stream(["2 + 2 ", "= **4**."], calls))

    response = client.post("/api/gemini", json={"prompt": "What is 2+2?"})

    assert response.status_code == 200
    assert response.text == "2 + 2 = 4."
    assert response.headers["content-type"].startswith("text/plain")
    assert response.headers["cache-control"] == "no-cache, no-transform"
    assert response.headers["x-accel-buffering"] == "no"
    assert calls == [("What is 2+2?", [])]


def test_history_is_forwarded(client, monkeypatch):
    calls = []
    monkeypatch.setattr(main, "stream_answer", fake_stream(["ok"], calls))
    history = [
        {"role": "user", "parts": [{"text": "hi"}]},
        {"role": "model", "parts": [{"text": "hello"}]},
    ]

    response = client.post("/api/gemini", json={"prompt": "again", "conversationHistory": history})

    assert response.status_code == 200
    assert calls[0][1] == history


@pytest.mark.parametrize("body", [{}, {"prompt": ""}, {"prompt": "   "}, {"prompt": 42}])
def test_missing_prompt_is_rejected(client, monkeypatch, body):
    calls = []
    monkeypatch.setattr(main, "stream_answer", fake_stream(["never"], calls))

    response = client.post("/api/gemini", json=body)

    assert response.status_code == 400
    assert response.json() == {"error": "Prompt is required"}
    assert calls == []


def test_failure_before_streaming_returns_json_error(client, monkeypatch):
    monkeypatch.setattr(main, "stream_answer", fake_stream(["x"], [], fail_after=0))

    response = client.post("/api/gemini", json={"prompt": "hello"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error"}


def test_failure_mid_stream_ends_with_marker(client, monkeypatch):
    monkeypatch.setattr(main, "stream_answer", fake_stream(["partial"], [], fail_after=1))

    response = client.post("/api/gemini", json={"prompt": "hello"})

    assert response.status_code == 200
    assert response.text == "partial" + STREAM_ERROR_MARKER


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_request_without_body_is_rejected(client):
    response = client.post("/api/gemini")

    assert response.status_code == 400
    assert response.json() == {"error": "Prompt is required"}


def test_malformed_history_names_the_field(client, monkeypatch):
    calls = []
    monkeypatch.setattr(main, "stream_answer", fake_stream(["never"], calls))

    response = client.post(
        "/api/gemini",
        json={"prompt": "hi", "conversationHistory": [{"role": "system", "parts": []}]},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid conversationHistory"}
    assert calls == []


def test_missing_api_key_is_a_server_error(client, monkeypatch):
    monkeypatch.setattr(gemini_service, "GOOGLE_API_KEY", None)
    monkeypatch.setattr(gemini_service, "_llm", None)
    monkeypatch.setattr(main, "stream_answer", gemini_service.stream_answer)

    response = client.post("/api/gemini", json={"prompt": "hello"})

    assert response.status_code == 500
    assert response.json() == {"error": "Internal Server Error"}
