"""
HTTP surface tests: FastAPI app wired to stubbed model capabilities
"""
import importlib.util
import io
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from cropdoc.dependencies import SessionRegistry
from cropdoc.main import create_app
from cropdoc.models import DeepDiveResult, DeepDiveSource
from cropdoc.routers import limiter
from cropdoc.services.assistant import AssistantClient
from cropdoc.services.history import FileRecordBackend, MemoryRecordBackend

from conftest import StubChat, make_result


def png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), "green").save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def diagnostic_client():
    client = MagicMock()
    client.analyze = AsyncMock(return_value=make_result())
    client.deep_dive = AsyncMock(return_value=DeepDiveResult(
        text="Apply copper hydroxide every 7-10 days.",
        sources=[DeepDiveSource(title="UMN Extension", uri="https://extension.umn.edu/late-blight")],
    ))
    return client


@pytest.fixture
def chat():
    return StubChat("Remove infected leaves and keep foliage dry.")


@pytest.fixture
def registry(diagnostic_client, chat):
    return SessionRegistry(
        diagnostic_client=diagnostic_client,
        assistant_client=AssistantClient(chat),
        backend=MemoryRecordBackend(),
    )


@pytest.fixture
def api(registry, monkeypatch):
    monkeypatch.setattr(limiter, "enabled", False)
    return TestClient(create_app(registry=registry))


@pytest.fixture
def session_id(api):
    return api.post("/sessions").json()["session_id"]


def upload(api, session_id, content=None, filename="leaf.png"):
    return api.post(
        f"/sessions/{session_id}/analyze",
        files={"image": (filename, content if content is not None else png_bytes(), "image/png")},
    )


# =============================================================================
# Service info
# =============================================================================
class TestServiceInfo:
    def test_root(self, api):
        assert api.get("/").json()["status"] == "online"

    def test_health(self, api, session_id):
        body = api.get("/health").json()
        assert body["status"] == "healthy"
        assert body["active_sessions"] == 1
        assert body["services"]["history_backend"] == "memory"


# =============================================================================
# Sessions
# =============================================================================
class TestSessions:
    def test_new_session_is_idle(self, api):
        body = api.post("/sessions").json()
        assert body["status"] == "IDLE"
        assert body["client_id"] == "default"
        assert body["history"] == []

    def test_invalid_client_id(self, api):
        assert api.post("/sessions", json={"client_id": "../etc"}).status_code == 422

    def test_unknown_session(self, api):
        response = api.get("/sessions/nope")
        assert response.status_code == 404
        assert response.json()["status"] == "error"

    def test_close_session(self, api, session_id):
        assert api.delete(f"/sessions/{session_id}").json()["status"] == "closed"
        assert api.get(f"/sessions/{session_id}").status_code == 404


class TestAnalyze:
    def test_upload_success(self, api, session_id, diagnostic_client):
        response = upload(api, session_id)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "SUCCESS"
        assert body["condition"] == "diseased"
        assert body["current_result"]["disease"] == "Late Blight"
        assert body["current_image"].startswith("data:image/png;base64,")
        assert len(body["history"]) == 1
        diagnostic_client.analyze.assert_awaited_once()

    def test_non_image_rejected(self, api, session_id, diagnostic_client):
        response = upload(api, session_id, content=b"definitely not a picture", filename="notes.txt")
        assert response.status_code == 400
        diagnostic_client.analyze.assert_not_awaited()

    def test_analysis_failure_then_retry(self, api, session_id, diagnostic_client):
        diagnostic_client.analyze.side_effect = [ConnectionError(""), make_result()]
        body = upload(api, session_id).json()
        assert body["status"] == "ERROR"
        assert body["error"]["message"] == "Analysis Interrupted"
        assert body["error"]["details"] == "An unexpected error occurred during neural network analysis."

        body = api.post(f"/sessions/{session_id}/retry").json()
        assert body["status"] == "SUCCESS"
        first, second = diagnostic_client.analyze.await_args_list
        assert first.args == second.args

    def test_retry_from_idle_conflicts(self, api, session_id):
        assert api.post(f"/sessions/{session_id}/retry").status_code == 409

    def test_new_scan(self, api, session_id):
        upload(api, session_id)
        body = api.post(f"/sessions/{session_id}/new-scan").json()
        assert body["status"] == "IDLE"
        assert len(body["history"]) == 1

    def test_demo(self, api, session_id, diagnostic_client):
        body = api.post(f"/sessions/{session_id}/demo").json()
        assert body["status"] == "SUCCESS"
        assert body["current_result"]["disease"] == "Late Blight (Phytophthora infestans)"
        assert body["history"] == []
        diagnostic_client.analyze.assert_not_awaited()


class TestHistoryRoutes:
    def test_select_entry_without_reanalysis(self, api, session_id, diagnostic_client):
        upload(api, session_id)
        api.post(f"/sessions/{session_id}/new-scan")
        entry_id = api.get(f"/sessions/{session_id}/history").json()["entries"][0]["id"]

        body = api.post(f"/sessions/{session_id}/history/{entry_id}/select").json()

        assert body["status"] == "SUCCESS"
        assert diagnostic_client.analyze.await_count == 1

    def test_select_unknown_entry(self, api, session_id):
        assert api.post(f"/sessions/{session_id}/history/missing/select").status_code == 404

    def test_history_shared_by_client_id(self, api):
        first = api.post("/sessions", json={"client_id": "farm-7"}).json()["session_id"]
        upload(api, first)
        second = api.post("/sessions", json={"client_id": "farm-7"}).json()
        other = api.post("/sessions", json={"client_id": "farm-8"}).json()
        assert len(second["history"]) == 1
        assert other["history"] == []

    def test_clear(self, api, session_id):
        upload(api, session_id)
        assert api.delete(f"/sessions/{session_id}/history").json()["total"] == 0
        assert api.get(f"/sessions/{session_id}/history").json()["entries"] == []


class TestDeepDiveRoutes:
    def test_lookup(self, api, session_id, diagnostic_client):
        upload(api, session_id)
        body = api.post(f"/sessions/{session_id}/deep-dive", json={"recommendation": 0}).json()
        assert body["deep_dive"]["status"] == "result"
        assert body["deep_dive"]["result"]["sources"][0]["title"] == "UMN Extension"
        diagnostic_client.deep_dive.assert_awaited_once_with(
            "Tomato", "Late Blight treatment: Apply copper-based fungicide"
        )

    def test_out_of_range(self, api, session_id):
        upload(api, session_id)
        assert api.post(f"/sessions/{session_id}/deep-dive", json={"recommendation": 9}).status_code == 400

    def test_failure_keeps_list(self, api, session_id, diagnostic_client):
        diagnostic_client.deep_dive.side_effect = RuntimeError("search down")
        upload(api, session_id)
        response = api.post(f"/sessions/{session_id}/deep-dive", json={"recommendation": 2})
        assert response.status_code == 200
        assert response.json()["deep_dive"]["status"] == "recommendations"

    def test_back_to_recommendations(self, api, session_id):
        upload(api, session_id)
        api.post(f"/sessions/{session_id}/deep-dive", json={"recommendation": 0})
        body = api.delete(f"/sessions/{session_id}/deep-dive").json()
        assert body["deep_dive"]["status"] == "recommendations"


# =============================================================================
# Assistant
# =============================================================================
class TestAssistantRoutes:
    def test_generic_greeting_before_analysis(self, api, session_id):
        body = api.post(f"/sessions/{session_id}/assistant/open").json()
        assert body["context"] is None
        assert body["messages"][0]["text"].startswith("Hello! I'm your AI Agricultural Assistant")

    def test_contextual_chat(self, api, session_id, chat):
        upload(api, session_id)
        opened = api.post(f"/sessions/{session_id}/assistant/open").json()
        assert opened["context"] == {"crop": "Tomato", "disease": "Late Blight"}

        body = api.post(f"/sessions/{session_id}/assistant/messages", json={"text": "What should I spray?"}).json()

        assert body["reply"]["text"] == "Remove infected leaves and keep foliage dry."
        assert [m["role"] for m in body["messages"]] == ["assistant", "user", "assistant"]
        assert "Late Blight" in chat.calls[0][1]["content"]

    def test_new_scan_resets_chat(self, api, session_id):
        upload(api, session_id)
        api.post(f"/sessions/{session_id}/assistant/open")
        api.post(f"/sessions/{session_id}/assistant/messages", json={"text": "Hi"})
        api.post(f"/sessions/{session_id}/new-scan")

        body = api.get(f"/sessions/{session_id}/assistant").json()
        assert body["context"] is None
        assert len(body["messages"]) == 1

    def test_close(self, api, session_id):
        api.post(f"/sessions/{session_id}/assistant/open")
        body = api.delete(f"/sessions/{session_id}/assistant").json()
        assert body["open"] is False
        assert body["messages"] == []


# =============================================================================
# Startup
# =============================================================================
def load_serverless_entry():
    path = Path(__file__).resolve().parent.parent / "api" / "index.py"
    spec = importlib.util.spec_from_file_location("cropdoc_serverless_entry", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestStartup:
    def test_serverless_entry_exposes_app(self):
        from cropdoc.main import app
        assert load_serverless_entry().app is app

    def test_failed_startup_answers_503(self):
        entry = load_serverless_entry()
        response = TestClient(entry.failed_startup_app(RuntimeError("OPENROUTER_BASE_URL invalid"))).get("/health")
        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "RuntimeError: OPENROUTER_BASE_URL invalid"
        assert "traceback" not in body

    def test_corrupt_history_file_does_not_block_sessions(self, tmp_path, diagnostic_client, chat, monkeypatch):
        monkeypatch.setattr(limiter, "enabled", False)
        path = tmp_path / "crop_health_history.json"
        path.write_bytes(b"\xff\xfe[not utf8")
        registry = SessionRegistry(
            diagnostic_client=diagnostic_client,
            assistant_client=AssistantClient(chat),
            backend=FileRecordBackend(str(path)),
        )
        response = TestClient(create_app(registry=registry)).post("/sessions")
        assert response.status_code == 200
        assert response.json()["history"] == []
