"""
End-to-End Tests for the HTTP API

Runs the FastAPI app with an in-memory chat service injected.
"""

import pytest
import sys
import os

# Add project root and backend to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "history_tutor_chat", "src"))
sys.path.insert(0, os.path.join(project_root, "backend"))

from fastapi.testclient import TestClient

import main
from history_tutor_chat.client_state import InMemoryClientState
from history_tutor_chat.config import MEMORY, Settings, build_chat_service
from history_tutor_chat.generation import TextGenerator
from history_tutor_chat.knowledge import InMemoryKnowledgeLookup
from history_tutor_chat.models import LessonDoc
from history_tutor_chat.store import InMemoryStore


class CannedGenerator(TextGenerator):
    async def generate(self, prompt, grounding_context=""):
        return "Nội dung giải thích"


@pytest.fixture
def client():
    service = build_chat_service(
        Settings(store_backend=MEMORY),
        store=InMemoryStore(),
        lookup=InMemoryKnowledgeLookup([
            LessonDoc(grade=12, lesson=2, title="Trật tự thế giới sau Chiến tranh lạnh", content="Sau năm 1991..."),
        ]),
        generator=CannedGenerator(),
        client_state=InMemoryClientState(),
    )
    main.app.dependency_overrides[main.get_chat_service] = lambda: service
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


class TestApi:
    """HTTP surface over the chat service."""

    def test_health(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_chat_creates_conversation(self, client):
        response = client.post("/api/chat", json={"content": "Bài 2 Lớp 12"})

        assert response.status_code == 200
        body = response.json()
        assert [m["role"] for m in body["messages"]] == ["user", "assistant"]
        assert body["reply"]["content"].startswith("# Bài 2 (Lớp 12)")
        assert body["reply"]["lesson_ref"] == {"grade": 12, "lesson": 2, "title": "Trật tự thế giới sau Chiến tranh lạnh"}
        assert body["reply"]["id"] == body["messages"][1]["id"]
        assert body["syncing"] is False

        conversations = client.get("/api/conversations").json()["conversations"]
        assert [c["id"] for c in conversations] == [body["conversation_id"]]

    def test_empty_message_is_422(self, client):
        response = client.post("/api/chat", json={"content": "   "})
        assert response.status_code == 422

    def test_conversation_lifecycle(self, client):
        conversation_id = client.post("/api/conversations").json()["conversation_id"]

        selected = client.post(f"/api/conversations/{conversation_id}/select")
        assert selected.status_code == 200
        assert selected.json()["messages"] == []

        client.post("/api/chat", json={"content": "Bài 2 Lớp 12", "conversation_id": conversation_id})
        messages = client.get(f"/api/conversations/{conversation_id}/messages").json()
        assert len(messages["messages"]) == 2

        refreshed = client.post(f"/api/conversations/{conversation_id}/refresh").json()
        assert len(refreshed["messages"]) == 2

        assert client.delete(f"/api/conversations/{conversation_id}").json()["status"] == "deleted"
        assert client.get(f"/api/conversations/{conversation_id}/messages").json()["messages"] == []

    def test_unknown_conversation_is_404(self, client):
        assert client.post("/api/conversations/missing/select").status_code == 404
        assert client.delete("/api/conversations/missing").status_code == 404
