"""
API tests against the FastAPI app with in-memory state and a mocked
extraction service.
"""

import base64
from functools import partial
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

import server
from extraction_service import ImageSubject, UnsupportedImageError
from health_log import HealthLog, MedicationCatalog
from models import GlucoseContext, GlucoseUnit, ParsedGlucose
from tests.conftest import FakeMicrophone
from voice_session import VoiceCaptureSession
from voice_websocket_handler import EMPTY_CATALOG_MESSAGE, MICROPHONE_ERROR_MESSAGE, VoiceWebSocketHandler

PHOTO = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode()


@pytest.fixture
def extraction():
    service = MagicMock()
    service.extract_from_text = AsyncMock()
    service.extract_from_image = AsyncMock()
    service.match_medication = AsyncMock()
    return service


@pytest.fixture
def client(monkeypatch, extraction):
    monkeypatch.setattr(server, "health_log", HealthLog())
    monkeypatch.setattr(server, "medication_catalog", MedicationCatalog())
    monkeypatch.setattr(server, "extraction_service", extraction)
    return TestClient(server.app)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestReadings:
    def test_manual_reading_and_combined_log(self, client):
        client.post("/api/readings/glucose", json={
            "timestamp": "2026-03-01T08:00:00+00:00", "value": 5.4, "unit": "mmol/L", "context": "fasting",
        })
        client.post("/api/readings/weight", json={
            "timestamp": "2026-03-01T09:00:00+00:00", "value": 80.2, "unit": "kg",
        })

        logs = client.get("/api/logs").json()

        assert [r["kind"] for r in logs["logs"]] == ["weight", "glucose"]
        assert logs["logs"][1]["source"] == "manual"
        assert logs["version"] == 2

    def test_created_reading_gets_server_id(self, client):
        response = client.post("/api/readings/weight", json={"id": "mine", "value": 80, "unit": "kg"})

        assert response.status_code == 201
        assert response.json()["id"] != "mine"

    def test_invalid_reading_is_422(self, client):
        response = client.post("/api/readings/weight", json={"value": 80, "unit": "stone"})

        assert response.status_code == 422
        assert client.get("/api/logs").json()["logs"] == []

    def test_unknown_kind_is_404(self, client):
        assert client.get("/api/readings/cholesterol").status_code == 404


class TestExtraction:
    def test_text_extraction_stages_result(self, client, extraction):
        extraction.extract_from_text.return_value = ParsedGlucose(
            value=8.9, unit=GlucoseUnit.MMOL_L, context=GlucoseContext.AFTER_MEAL
        )

        response = client.post("/api/extract/glucose/text", json={"transcript": "8.9 after lunch"})

        assert response.status_code == 200
        assert response.json()["staged"]["context"] == "after_meal"
        assert client.get("/api/logs").json()["logs"] == []

    def test_text_not_understood(self, client, extraction):
        extraction.extract_from_text.return_value = None

        response = client.post("/api/extract/weight/text", json={"transcript": "the weather is nice"})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "not_understood"

    def test_photo_of_wrong_subject(self, client, extraction):
        extraction.extract_from_image.side_effect = UnsupportedImageError(ImageSubject.FOOD)

        response = client.post("/api/extract/meal/photo", json={"image": PHOTO, "mime_type": "image/png"})

        assert response.status_code == 422
        assert response.json()["detail"] == {
            "error": "unsupported_image",
            "message": "Image does not appear to contain food.",
        }

    def test_photo_unreadable(self, client, extraction):
        extraction.extract_from_image.return_value = None

        response = client.post("/api/extract/glucose/photo", json={"image": PHOTO, "mime_type": "image/png"})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "unreadable"

    def test_photo_must_be_base64(self, client):
        response = client.post("/api/extract/glucose/photo", json={"image": "not base64!", "mime_type": "image/png"})

        assert response.status_code == 400

    def test_medication_photo_is_rejected(self, client, extraction):
        response = client.post("/api/extract/medication/photo", json={"image": PHOTO, "mime_type": "image/png"})

        assert response.status_code == 400
        extraction.extract_from_image.assert_not_awaited()


class TestMedicationCatalog:
    def test_crud(self, client):
        created = client.post("/api/medications", json={"name": "Metformin", "dosage": 500, "unit": "mg"}).json()

        updated = client.post("/api/medications", json={
            "id": created["id"], "name": "Metformin", "dosage": 850, "unit": "mg",
        }).json()
        listed = client.get("/api/medications").json()["medications"]

        assert updated["id"] == created["id"]
        assert listed == [updated]

        assert client.delete(f"/api/medications/{created['id']}").status_code == 200
        assert client.get("/api/medications").json()["medications"] == []

    def test_delete_unknown_is_404(self, client):
        assert client.delete("/api/medications/missing").status_code == 404


class TestVoiceWebSocket:
    def test_microphone_failure_is_reported(self, client, monkeypatch):
        session_factory = partial(VoiceCaptureSession, microphone_factory=lambda: FakeMicrophone(fail=True))
        monkeypatch.setattr(server, "voice_handler_class", partial(VoiceWebSocketHandler, session_factory=session_factory))

        with client.websocket_connect("/ws/voice/glucose") as ws:
            ready = ws.receive_json()
            ws.send_json({"type": "start"})
            error = ws.receive_json()

        assert ready["type"] == "status"
        assert ready["status"] == "idle"
        assert error == {"type": "error", "message": MICROPHONE_ERROR_MESSAGE}

    def test_disconnect_while_listening_releases_session(self, client, monkeypatch, microphone, live_client, connection):
        session_factory = partial(VoiceCaptureSession, client=live_client, microphone_factory=lambda: microphone)
        monkeypatch.setattr(server, "voice_handler_class", partial(VoiceWebSocketHandler, session_factory=session_factory))

        with client.websocket_connect("/ws/voice/weight") as ws:
            ws.receive_json()
            ws.send_json({"type": "start"})
            listening = ws.receive_json()

        assert listening["status"] == "listening"
        assert microphone.start_calls == 1
        assert microphone.close_calls == 1
        assert connection.exit_calls == 1

    def test_medication_needs_catalog(self, client):
        with client.websocket_connect("/ws/voice/medication") as ws:
            ws.receive_json()
            ws.send_json({"type": "start"})
            error = ws.receive_json()

        assert error == {"type": "error", "message": EMPTY_CATALOG_MESSAGE}

    def test_invalid_json_is_reported(self, client):
        with client.websocket_connect("/ws/voice/weight") as ws:
            ws.receive_json()
            ws.send_text("{not json")
            error = ws.receive_json()

        assert error["type"] == "error"
