"""Tests for the read-only predictions API."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import prediction_api

PAYLOAD = {
    "generatedAt": "2026-10-12T06:00:00-05:00",
    "timezone": "America/Chicago",
    "model": "decay-histogram",
    "modelInfo": {"decayLambda": 0.95},
    "dataQuality": {"rowsRead": 3},
    "users": [
        {
            "userId": "user-a",
            "totalSessions": 8,
            "sessionsUntilUnlock": 0,
            "dailyFrequency": [0, 1, 0, 0, 0, 0, 0],
            "prediction": {"predictedTime": "2026-10-12T08:00:00-05:00", "confidence": 1.0},
            "insights": [{"type": "regularity", "message": "..."}],
        },
        {
            "userId": "user-b",
            "totalSessions": 1,
            "sessionsUntilUnlock": 4,
            "dailyFrequency": [0, 0, 0, 0, 0, 0, 1],
            "prediction": None,
            "insights": [],
        },
    ],
}


@pytest.fixture
def predictions_path(tmp_path, monkeypatch):
    path = tmp_path / "predictions.json"
    monkeypatch.setattr(prediction_api, "PREDICTIONS_JSON_PATH", str(path))
    return path


@pytest.fixture
def client():
    return TestClient(prediction_api.app)


@pytest.fixture
def published(predictions_path):
    predictions_path.write_text(json.dumps(PAYLOAD), encoding="utf-8")
    return predictions_path


def test_health(client, published):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["users"] == 2
    assert body["model"] == "decay-histogram"
    assert isinstance(body["generatedAgeSeconds"], int)


def test_not_generated_yet(client, predictions_path):
    response = client.get("/api/predictions")
    assert response.status_code == 503


def test_corrupt_file(client, predictions_path):
    predictions_path.write_text("{not json", encoding="utf-8")
    response = client.get("/health")
    assert response.status_code == 500
    assert response.json()["detail"] == "Predictions file corrupted"


def test_full_document(client, published):
    assert client.get("/api/predictions").json() == PAYLOAD


def test_user_listing(client, published):
    assert client.get("/api/predictions/users").json() == [
        {"userId": "user-a", "totalSessions": 8, "hasPrediction": True},
        {"userId": "user-b", "totalSessions": 1, "hasPrediction": False},
    ]


def test_single_user(client, published):
    body = client.get("/api/predictions/users/user-b").json()
    assert body["sessionsUntilUnlock"] == 4
    assert body["prediction"] is None


def test_unknown_user(client, published):
    response = client.get("/api/predictions/users/nobody")
    assert response.status_code == 404


class TestGeneratedAge:
    def test_missing(self):
        assert prediction_api.generated_age_seconds({}) is None

    def test_unparseable(self):
        assert prediction_api.generated_age_seconds({"generatedAt": "soon"}) is None

    def test_aware(self):
        generated = datetime(2026, 10, 12, 12, 0, tzinfo=timezone.utc)
        now = generated + timedelta(minutes=5)
        payload = {"generatedAt": generated.isoformat()}
        assert prediction_api.generated_age_seconds(payload, now=now) == 300


def test_allowed_origins(monkeypatch):
    monkeypatch.setenv("PREDICTION_API_ALLOW_ORIGINS", "https://a.example, https://b.example")
    assert prediction_api.parse_allowed_origins() == ["https://a.example", "https://b.example"]
    monkeypatch.setenv("PREDICTION_API_ALLOW_ORIGINS", "")
    assert prediction_api.parse_allowed_origins() == ["*"]
