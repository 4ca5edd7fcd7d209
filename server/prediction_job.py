import json
import os
import traceback
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pymysql
import pytz

from session_predictor import (
    BUCKET_MINUTES,
    DECAY_LAMBDA,
    MIN_SESSIONS_FOR_INSIGHTS,
    MIN_SESSIONS_FOR_FORECAST,
    MIN_SESSIONS_FOR_UNLOCK,
    SMOOTHING_WEIGHT,
    TZ,
    TZ_NAME,
    SessionRecord,
    build_model,
    half_life,
    model_summary,
    parse_session_row,
)

HISTORY_DAYS = int(os.getenv("SESSION_HISTORY_DAYS", "0"))

PREDICTIONS_JSON_PATH = os.getenv(
    "PREDICTIONS_JSON_PATH",
    os.path.join(os.path.dirname(__file__), "predictions.json"),
)

SQL_HISTORY_BASE = """
SELECT
    session_id,
    user_id,
    started_at,
    ended_at
FROM session_history
WHERE started_at IS NOT NULL
"""


def db_connect():
    host = os.getenv("SESSION_DB_HOST", "localhost")
    port = int(os.getenv("SESSION_DB_PORT", "3306"))
    user = os.getenv("SESSION_DB_USER", "root")
    password = os.getenv("SESSION_DB_PASSWORD", "")
    database = os.getenv("SESSION_DB_NAME", "sessions")

    return pymysql.connect(
        host=host,
        port=port,
        user=user,
        password=password,
        database=database,
        autocommit=True,
        charset="utf8mb4",
    )


def dedupe_exact_starts(sessions: List[SessionRecord]) -> Tuple[List[SessionRecord], int]:
    if not sessions:
        return [], 0
    ordered = sorted(sessions, key=lambda s: s.started_at)
    deduped: List[SessionRecord] = []
    removed = 0
    for session in ordered:
        if deduped and deduped[-1].started_at == session.started_at:
            removed += 1
            # a completed duplicate outranks a pending one
            if deduped[-1].ended_at is None and session.ended_at is not None:
                deduped[-1] = session
            continue
        deduped.append(session)
    return deduped, removed


def load_history(conn, now: Optional[datetime] = None):
    sessions_by_user: Dict[str, List[SessionRecord]] = {}

    quality = {
        "rowsRead": 0,
        "rowsDroppedInvalid": 0,
        "duplicatesRemoved": 0,
        "pendingSessions": 0,
    }

    sql = SQL_HISTORY_BASE
    params: Tuple[object, ...] = ()
    if HISTORY_DAYS > 0:
        sql += " AND started_at >= %s"
        since = (now or datetime.now(TZ)) - timedelta(days=HISTORY_DAYS)
        # stored timestamps are the remote UTC strings
        params = (since.astimezone(pytz.utc).isoformat(),)

    with conn.cursor() as cur:
        cur.execute(sql, params)
        for session_id, user_id, started_at, ended_at in cur.fetchall():
            quality["rowsRead"] += 1
            if user_id is None:
                quality["rowsDroppedInvalid"] += 1
                continue

            record = parse_session_row({"started_at": started_at, "ended_at": ended_at})
            if record is None:
                quality["rowsDroppedInvalid"] += 1
                continue

            # mixing naive and aware values breaks sorting; pin naive rows to the viewer zone
            if record.started_at.tzinfo is None:
                record = record._replace(started_at=TZ.localize(record.started_at))
            if record.ended_at is not None and record.ended_at.tzinfo is None:
                record = record._replace(ended_at=TZ.localize(record.ended_at))

            if record.ended_at is None:
                quality["pendingSessions"] += 1

            sessions_by_user.setdefault(str(user_id), []).append(record)

    for user_id, sessions in sessions_by_user.items():
        deduped, removed = dedupe_exact_starts(sessions)
        quality["duplicatesRemoved"] += removed
        sessions_by_user[user_id] = deduped

    quality["usersWithHistory"] = len(sessions_by_user)
    return sessions_by_user, quality


def build_user_payload(user_id: str, sessions: List[SessionRecord], now: datetime) -> Dict[str, object]:
    model = build_model(sessions, now=now)
    payload: Dict[str, object] = {"userId": user_id}
    payload.update(model_summary(model, now=now))
    return payload


def build_predictions(conn=None, now: Optional[datetime] = None) -> Dict[str, object]:
    now = now or datetime.now(TZ)

    owns_conn = conn is None
    if owns_conn:
        conn = db_connect()
    try:
        sessions_by_user, quality = load_history(conn, now=now)
    finally:
        if owns_conn:
            conn.close()

    users_payload = [
        build_user_payload(user_id, sessions, now)
        for user_id, sessions in sorted(sessions_by_user.items())
    ]

    quality["usersPredicted"] = sum(1 for u in users_payload if u["prediction"] is not None)

    return {
        "generatedAt": now.isoformat(),
        "timezone": TZ_NAME,
        "model": "decay-histogram",
        "modelInfo": {
            "decayLambda": DECAY_LAMBDA,
            "halfLifeDays": round(half_life(), 2),
            "bucketMinutes": BUCKET_MINUTES,
            "smoothingWeight": SMOOTHING_WEIGHT,
            "minSessionsForForecast": MIN_SESSIONS_FOR_FORECAST,
            "minSessionsForUnlock": MIN_SESSIONS_FOR_UNLOCK,
            "minSessionsForInsights": MIN_SESSIONS_FOR_INSIGHTS,
        },
        "dataQuality": quality,
        "users": users_payload,
    }


def write_predictions(payload: Dict[str, object], path: Optional[str] = None) -> None:
    path = path or PREDICTIONS_JSON_PATH
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False)
    os.replace(tmp_path, path)


def main() -> int:
    start = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    try:
        payload = build_predictions()
        write_predictions(payload)

        users = payload.get("users", [])
        quality = payload.get("dataQuality", {})
        print(
            f"{start} OK: users {len(users)} | predicted {quality.get('usersPredicted')}"
            f" | rowsRead {quality.get('rowsRead')} | dropped {quality.get('rowsDroppedInvalid')}"
            f" | pending {quality.get('pendingSessions')}"
        )
        return 0
    except Exception as exc:
        print(start, "ERROR:", "{}: {}".format(type(exc).__name__, exc))
        print(traceback.format_exc())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
