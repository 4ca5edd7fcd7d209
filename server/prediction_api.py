import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

PREDICTIONS_JSON_PATH = os.getenv(
    "PREDICTIONS_JSON_PATH",
    os.path.join(os.path.dirname(__file__), "predictions.json"),
)

API_HOST = os.getenv("PREDICTION_API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("PREDICTION_API_PORT", "8000"))


def parse_allowed_origins() -> List[str]:
    raw = os.getenv("PREDICTION_API_ALLOW_ORIGINS", "*").strip()
    if not raw:
        return ["*"]
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_predictions() -> Dict[str, Any]:
    if not os.path.exists(PREDICTIONS_JSON_PATH):
        raise HTTPException(status_code=503, detail="Predictions not generated yet")

    try:
        with open(PREDICTIONS_JSON_PATH, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=500, detail="Predictions file corrupted") from exc
    except OSError as exc:
        raise HTTPException(status_code=500, detail="Failed to read predictions file") from exc


def generated_age_seconds(payload: Dict[str, Any], now: Optional[datetime] = None) -> Optional[int]:
    generated_at = payload.get("generatedAt")
    if not generated_at:
        return None
    try:
        ts = datetime.fromisoformat(str(generated_at))
    except ValueError:
        return None
    if now is None:
        now = datetime.now(ts.tzinfo) if ts.tzinfo else datetime.now()
    return int((now - ts).total_seconds())


app = FastAPI(title="Session Prediction API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=parse_allowed_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> Dict[str, Any]:
    payload = load_predictions()
    return {
        "status": "ok",
        "generatedAt": payload.get("generatedAt"),
        "generatedAgeSeconds": generated_age_seconds(payload),
        "users": len(payload.get("users", [])),
        "model": payload.get("model"),
    }


@app.get("/api/predictions")
def predictions() -> Dict[str, Any]:
    return load_predictions()


@app.get("/api/predictions/users")
def users() -> List[Dict[str, Any]]:
    payload = load_predictions()
    items = []
    for user in payload.get("users", []):
        items.append(
            {
                "userId": user.get("userId"),
                "totalSessions": user.get("totalSessions"),
                "hasPrediction": user.get("prediction") is not None,
            }
        )
    return items


@app.get("/api/predictions/users/{user_id}")
def user_prediction(user_id: str) -> Dict[str, Any]:
    payload = load_predictions()
    user = next((row for row in payload.get("users", []) if row.get("userId") == user_id), None)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("prediction_api:app", host=API_HOST, port=API_PORT, reload=False)
