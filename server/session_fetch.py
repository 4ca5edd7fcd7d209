import os
import traceback
from datetime import datetime
from typing import Dict, List, Tuple

import pymysql
import requests

SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")
FETCH_USER_ID = os.getenv("SESSION_FETCH_USER_ID", "").strip()
FETCH_PAGE_SIZE = int(os.getenv("SESSION_FETCH_PAGE_SIZE", "1000"))
FETCH_TIMEOUT = float(os.getenv("SESSION_FETCH_TIMEOUT", "20"))

LATEST_SQL = """
SELECT session_id, ended_at
FROM session_history;
"""

UPSERT_SQL = """
INSERT INTO session_history
(
    session_id,
    user_id,
    started_at,
    ended_at,
    fetched_at
)
VALUES (%s, %s, %s, %s, NOW(3))
ON DUPLICATE KEY UPDATE
    started_at = VALUES(started_at),
    ended_at = VALUES(ended_at),
    fetched_at = VALUES(fetched_at);
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


def sessions_url() -> str:
    if not SUPABASE_URL:
        raise RuntimeError("SUPABASE_URL is not set")
    return SUPABASE_URL + "/rest/v1/sessions"


def fetch_sessions(user_id: str = FETCH_USER_ID, page_size: int = FETCH_PAGE_SIZE) -> List[Dict]:
    headers = {
        "apikey": SUPABASE_KEY,
        "Authorization": "Bearer " + SUPABASE_KEY,
    }
    params = {
        "select": "id,user_id,started_at,ended_at",
        "order": "started_at.asc",
        "limit": str(page_size),
    }
    if user_id:
        params["user_id"] = "eq." + user_id

    rows: List[Dict] = []
    offset = 0
    while True:
        params["offset"] = str(offset)
        r = requests.get(sessions_url(), headers=headers, params=params, timeout=FETCH_TIMEOUT)
        r.raise_for_status()
        page = r.json()
        rows.extend(page)
        if len(page) < page_size:
            break
        offset += page_size
    return rows


def get_latest_map(conn) -> Dict[str, str]:
    with conn.cursor() as cur:
        cur.execute(LATEST_SQL)
        rows = cur.fetchall()
    # normalize None -> "" so pending and missing compare the same way
    return {str(session_id): (str(ended) if ended else "") for (session_id, ended) in rows}


def insert_if_changed(conn, remote: List[Dict]) -> Tuple[int, int]:
    latest = get_latest_map(conn)

    to_upsert = []
    skipped = 0

    for s in remote:
        session_id = s.get("id")
        started_at = s.get("started_at")
        if session_id is None or not started_at:
            continue

        session_id = str(session_id)
        ended_at = s.get("ended_at") or ""

        if session_id in latest and latest[session_id] == ended_at:
            skipped += 1
            continue

        to_upsert.append((
            session_id,
            s.get("user_id"),
            started_at,
            ended_at or None,
        ))

    if to_upsert:
        with conn.cursor() as cur:
            cur.executemany(UPSERT_SQL, to_upsert)

    return len(to_upsert), skipped


def main() -> int:
    start = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    conn = None
    try:
        conn = db_connect()
        remote = fetch_sessions()
        upserted, skipped = insert_if_changed(conn, remote)
        print(f"{start} OK: fetched {len(remote)} | upserted {upserted} | skipped {skipped}")
        return 0
    except Exception as exc:
        print(start, "ERROR:", "{}: {}".format(type(exc).__name__, exc))
        print(traceback.format_exc())
        return 1
    finally:
        if conn is not None:
            conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
