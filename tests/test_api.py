"""Tests for API routes."""
import json

import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from greg.agents.orchestrator import ChatOrchestrator
from greg.llm_client import ModelStreamError
from tests.helpers import FakeContextBuilder, FakeLLM, FakeSearch

CHAT_BODY = {"model": "openai/gpt-4o-mini", "messages": [{"role": "user", "content": "Explain recursion to me"}]}


@pytest.fixture
def client():
    from greg.main import app

    with TestClient(app) as test_client:
        yield test_client


def frames_of(text: str) -> list[str]:
    return [block for block in text.split("\n\n") if block]


class RecordingOrchestrator:
    """Echoes the transport options it was given."""

    def __init__(self):
        self.calls = []

    async def run(self, request, writer, *, ui_language=None, log=None):
        self.calls.append({"request": request, "ui_language": ui_language, "log": log, "detailed": writer.send_detailed_status})
        writer.write_delta("ok")
        writer.write_done()
        writer.close()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "greg"}


@pytest.mark.parametrize(
    ("body", "error"),
    [
        ("{not json", "Invalid JSON"),
        ("[1, 2]", "Invalid JSON"),
        (json.dumps({"messages": CHAT_BODY["messages"]}), "Missing model"),
        (json.dumps({"model": "", "messages": CHAT_BODY["messages"]}), "Missing model"),
        (json.dumps({"model": "m", "messages": "hello"}), "Invalid messages"),
        (json.dumps({"model": "m", "messages": [{"role": "robot", "content": "x"}]}), "Invalid messages"),
    ],
)
def test_chat_rejects_bad_requests(client, body, error):
    response = client.post("/api/chat", content=body, headers={"content-type": "application/json"})
    assert response.status_code == 400
    assert response.json() == {"error": error}


def test_chat_streams_openai_style_frames(client):
    orchestrator = ChatOrchestrator(llm=FakeLLM([["Hel", "lo!"]]), search=FakeSearch([]), context_builder=FakeContextBuilder())

    with patch("greg.api.routes.chat.get_orchestrator", return_value=orchestrator):
        response = client.post("/api/chat", json=CHAT_BODY)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = frames_of(response.text)
    assert frames[0] == 'data: {"choices": [{"delta": {"content": ""}}]}'
    contents = [json.loads(f[len("data: "):])["choices"][0]["delta"]["content"] for f in frames[:-1]]
    assert "".join(contents) == "Hello!"
    assert frames[-1] == "data: [DONE]"


def test_chat_upstream_error_still_finishes(client):
    orchestrator = ChatOrchestrator(
        llm=FakeLLM([ModelStreamError("OpenRouter error: 401")]),
        search=FakeSearch([]),
        context_builder=FakeContextBuilder(),
    )

    with patch("greg.api.routes.chat.get_orchestrator", return_value=orchestrator):
        response = client.post("/api/chat", json=CHAT_BODY)

    assert response.status_code == 200
    assert "❌ OpenRouter error: 401" in response.text
    assert frames_of(response.text)[-1] == "data: [DONE]"


def test_chat_passes_headers_to_orchestrator(client):
    orchestrator = RecordingOrchestrator()

    with patch("greg.api.routes.chat.get_orchestrator", return_value=orchestrator):
        response = client.post(
            "/api/chat",
            json={**CHAT_BODY, "customInstructions": "Be brief", "allowAutoContinue": False},
            headers={"x-ui-language": "fr", "x-greg-status": "detailed", "x-conversation-id": "conv-42"},
        )

    assert response.status_code == 200
    call = orchestrator.calls[0]
    assert call["ui_language"] == "fr"
    assert call["detailed"] is True
    assert call["log"].conversation_id == "conv-42"
    assert call["request"].custom_instructions == "Be brief"
    assert call["request"].allow_auto_continue is False
