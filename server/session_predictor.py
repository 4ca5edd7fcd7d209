import math
import os
import re
from datetime import datetime, time, timedelta
from typing import Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pytz

TZ_NAME = os.getenv("SESSION_TZ", "UTC")
TZ = pytz.timezone(TZ_NAME)

FRACTION_RE = re.compile(r"\.(\d+)")

DECAY_LAMBDA = float(os.getenv("DECAY_LAMBDA", "0.95"))

BUCKET_MINUTES = 15
BUCKETS_PER_DAY = 24 * 60 // BUCKET_MINUTES
DAYS_PER_WEEK = 7
SECONDS_PER_DAY = 86400.0

PRIMARY_WEIGHT = 1.0
SMOOTHING_WEIGHT = 0.3

# forecast gate, insight gate, and the "N more to unlock" counter shown to users
MIN_SESSIONS_FOR_FORECAST = 3
MIN_SESSIONS_FOR_INSIGHTS = 5
MIN_SESSIONS_FOR_UNLOCK = 5

CONFIDENCE_DIVISOR = 3.0
WEEKEND_SKEW_RATIO = 1.3
REGULAR_CELL_THRESHOLD = 0.5
REGULAR_MAX_CELLS = 5
TOP_PEAK_HOURS = 3

# 0 = Sunday, matching the histogram row order.
DAY_NAMES = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)
WEEKDAY_INDICES = (1, 2, 3, 4, 5)
WEEKEND_INDICES = (0, 6)

INSIGHT_PEAK_TIMES = "peak_times"
INSIGHT_WEEKEND_VS_WEEKDAY = "weekend_vs_weekday"
INSIGHT_REGULARITY = "regularity"


class SessionRecord(NamedTuple):
    started_at: datetime
    ended_at: Optional[datetime] = None


class PredictionModel(NamedTuple):
    histogram: np.ndarray
    daily_frequency: Tuple[float, ...]
    total_sessions: int
    last_updated: datetime


class PredictionResult(NamedTuple):
    predicted_time: datetime
    confidence: float
    day_of_week: int
    bucket: int
    day_offset: int


class PatternInsight(NamedTuple):
    type: str
    message: str


def decay_weight(days_ago: float, decay_lambda: float = DECAY_LAMBDA) -> float:
    """Recency weight for a session that happened `days_ago` days before now.

    With the default lambda of 0.95 a session from today weighs 1.0, one
    week ago 0.70, two weeks ago 0.49 and a month ago 0.21.
    """
    return decay_lambda ** days_ago


def half_life(decay_lambda: float = DECAY_LAMBDA) -> float:
    """Days until a session's weight drops to 50%."""
    return math.log(0.5) / math.log(decay_lambda)


def to_local(dt: datetime, tz=None) -> datetime:
    tz = tz or TZ
    if dt.tzinfo is None:
        return tz.localize(dt)
    return dt.astimezone(tz)


def parse_timestamp(raw_value) -> Optional[datetime]:
    if raw_value is None:
        return None

    if isinstance(raw_value, datetime):
        return raw_value

    if not isinstance(raw_value, str):
        return None

    text = raw_value.strip()
    if not text:
        return None

    normalized = text[:-1] + "+00:00" if text.endswith("Z") else text
    # fromisoformat before 3.11 only takes 3 or 6 fraction digits
    normalized = FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), normalized, count=1)
    try:
        return datetime.fromisoformat(normalized)
    except ValueError:
        pass

    for fmt in ("%Y-%m-%d %H:%M:%S.%f%z", "%Y-%m-%d %H:%M:%S%z", "%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(normalized, fmt)
        except ValueError:
            continue
    return None


def parse_session_row(row: Mapping[str, object]) -> Optional[SessionRecord]:
    started_at = parse_timestamp(row.get("started_at"))
    if started_at is None:
        return None
    return SessionRecord(started_at=started_at, ended_at=parse_timestamp(row.get("ended_at")))


def completed_sessions(sessions: Iterable[SessionRecord]) -> List[SessionRecord]:
    return [s for s in sessions if s.ended_at is not None]


def day_and_bucket(dt: datetime, tz=None) -> Tuple[int, int]:
    local = to_local(dt, tz)
    # isoweekday() is 1=Monday..7=Sunday; fold Sunday to 0.
    day = local.isoweekday() % 7
    minute_of_day = local.hour * 60 + local.minute
    bucket = min(max(minute_of_day // BUCKET_MINUTES, 0), BUCKETS_PER_DAY - 1)
    return day, bucket


def week_key(dt: datetime, tz=None) -> str:
    # Day-of-year heuristic, not ISO week numbering.
    tz = tz or TZ
    local = to_local(dt, tz)
    jan1 = tz.localize(datetime(local.year, 1, 1))
    weeks = (local - jan1).total_seconds() / (7 * SECONDS_PER_DAY)
    return "{}-W{}".format(local.year, math.ceil(weeks))


def build_histogram(
    sessions: Iterable[SessionRecord],
    now: Optional[datetime] = None,
    tz=None,
    decay_lambda: float = DECAY_LAMBDA,
) -> np.ndarray:
    """7 x 96 grid of session start times weighted by recency.

    Rows are days of the week (0=Sunday), columns are 15-minute buckets.
    Each completed session adds its decay weight to its own bucket and 30%
    of it to each neighbour on the same day. Smoothing never wraps across
    midnight.
    """
    now_local = to_local(now, tz) if now is not None else datetime.now(tz or TZ)
    histogram = np.zeros((DAYS_PER_WEEK, BUCKETS_PER_DAY), dtype=float)

    for session in sessions:
        if session.ended_at is None:
            continue

        start = to_local(session.started_at, tz)
        day, bucket = day_and_bucket(start, tz)
        days_ago = (now_local - start).total_seconds() / SECONDS_PER_DAY
        weight = decay_weight(days_ago, decay_lambda)

        histogram[day, bucket] += weight * PRIMARY_WEIGHT
        if bucket > 0:
            histogram[day, bucket - 1] += weight * SMOOTHING_WEIGHT
        if bucket < BUCKETS_PER_DAY - 1:
            histogram[day, bucket + 1] += weight * SMOOTHING_WEIGHT

    return histogram


def compute_daily_frequency(sessions: Iterable[SessionRecord], tz=None) -> List[float]:
    """Average sessions per day of week across the distinct weeks observed."""
    day_counts = [0] * DAYS_PER_WEEK
    weeks_seen = set()

    for session in sessions:
        if session.ended_at is None:
            continue
        day, _bucket = day_and_bucket(session.started_at, tz)
        day_counts[day] += 1
        weeks_seen.add(week_key(session.started_at, tz))

    total_weeks = max(len(weeks_seen), 1)
    return [count / total_weeks for count in day_counts]


def build_model(
    sessions: Iterable[SessionRecord],
    now: Optional[datetime] = None,
    tz=None,
) -> PredictionModel:
    tz = tz or TZ
    now_local = to_local(now, tz) if now is not None else datetime.now(tz)
    completed = completed_sessions(sessions)

    histogram = build_histogram(completed, now=now_local, tz=tz)
    histogram.setflags(write=False)

    return PredictionModel(
        histogram=histogram,
        daily_frequency=tuple(compute_daily_frequency(completed, tz)),
        total_sessions=len(completed),
        last_updated=now_local,
    )


def predict_next_session(
    model: PredictionModel,
    now: Optional[datetime] = None,
    tz=None,
) -> Optional[PredictionResult]:
    """Most likely next session slot within the coming week, or None.

    Scans forward from now: the rest of today first (strictly after the
    current bucket), then whole days. Once a day after today has been
    scanned with a non-zero peak in hand the search stops, so a peak today
    or tomorrow wins over a larger one later in the week. Equal scores keep
    the earliest slot.
    """
    if model.total_sessions < MIN_SESSIONS_FOR_FORECAST:
        return None

    tz = tz or TZ
    now_local = to_local(now, tz) if now is not None else datetime.now(tz)
    histogram = model.histogram
    current_day, current_bucket = day_and_bucket(now_local, tz)

    best_score = 0.0
    best_day = current_day
    best_bucket = current_bucket
    best_offset = 0

    for day_offset in range(DAYS_PER_WEEK):
        day = (current_day + day_offset) % DAYS_PER_WEEK
        start_bucket = current_bucket + 1 if day_offset == 0 else 0

        for bucket in range(start_bucket, BUCKETS_PER_DAY):
            score = float(histogram[day, bucket])
            if score > best_score:
                best_score = score
                best_day = day
                best_bucket = bucket
                best_offset = day_offset

        if best_score > 0 and day_offset >= 1:
            break

    if best_score == 0:
        return None

    minutes = best_bucket * BUCKET_MINUTES
    predicted_date = now_local.date() + timedelta(days=best_offset)
    predicted_time = tz.localize(
        datetime.combine(predicted_date, time(minutes // 60, minutes % 60))
    )

    total_weight = float(histogram.sum())
    avg_weight = total_weight / (DAYS_PER_WEEK * BUCKETS_PER_DAY)
    confidence = 0.0
    if avg_weight > 0:
        confidence = min(best_score / (avg_weight * CONFIDENCE_DIVISOR), 1.0)

    return PredictionResult(
        predicted_time=predicted_time,
        confidence=confidence,
        day_of_week=best_day,
        bucket=best_bucket,
        day_offset=best_offset,
    )


def format_hour(hour: int) -> str:
    if hour == 0:
        return "12 AM"
    if hour == 12:
        return "12 PM"
    return "{} AM".format(hour) if hour < 12 else "{} PM".format(hour - 12)


def hourly_totals(histogram: np.ndarray) -> List[float]:
    per_hour = BUCKETS_PER_DAY // 24
    return [float(v) for v in histogram.reshape(DAYS_PER_WEEK, 24, per_hour).sum(axis=(0, 2))]


def peak_hours(histogram: np.ndarray, limit: int = TOP_PEAK_HOURS) -> List[int]:
    totals = hourly_totals(histogram)
    ranked = sorted(range(24), key=lambda hour: -totals[hour])
    return [hour for hour in ranked[:limit] if totals[hour] > 0]


def get_insights(model: PredictionModel) -> List[PatternInsight]:
    insights: List[PatternInsight] = []
    if model.total_sessions < MIN_SESSIONS_FOR_INSIGHTS:
        return insights

    histogram = model.histogram
    daily_frequency = model.daily_frequency

    hours = peak_hours(histogram)
    if hours:
        times = ", ".join(format_hour(hour) for hour in hours)
        insights.append(
            PatternInsight(INSIGHT_PEAK_TIMES, "Your most common times are {}".format(times))
        )

    weekday_avg = sum(daily_frequency[i] for i in WEEKDAY_INDICES) / len(WEEKDAY_INDICES)
    weekend_avg = sum(daily_frequency[i] for i in WEEKEND_INDICES) / len(WEEKEND_INDICES)

    if weekend_avg > weekday_avg * WEEKEND_SKEW_RATIO:
        insights.append(
            PatternInsight(INSIGHT_WEEKEND_VS_WEEKDAY, "You tend to have more sessions on weekends")
        )
    elif weekday_avg > weekend_avg * WEEKEND_SKEW_RATIO:
        insights.append(
            PatternInsight(INSIGHT_WEEKEND_VS_WEEKDAY, "You tend to have more sessions on weekdays")
        )

    strong_cells = int(np.count_nonzero(histogram > REGULAR_CELL_THRESHOLD))
    if 0 < strong_cells <= REGULAR_MAX_CELLS:
        insights.append(
            PatternInsight(
                INSIGHT_REGULARITY,
                "Your schedule is very regular, your sessions run like clockwork!",
            )
        )

    return insights


def sessions_until_unlock(model: PredictionModel) -> int:
    return max(MIN_SESSIONS_FOR_UNLOCK - model.total_sessions, 0)


def model_cache_key(sessions: Sequence[SessionRecord], tz=None) -> Tuple[int, Optional[str]]:
    completed = completed_sessions(sessions)
    if not completed:
        return 0, None
    latest = max(to_local(s.started_at, tz) for s in completed)
    return len(completed), latest.isoformat()


class ModelCache:
    """Caller-owned memo of the last model built for a session list."""

    def __init__(self, tz=None):
        self.tz = tz
        self._key: Optional[Tuple[int, Optional[str]]] = None
        self._model: Optional[PredictionModel] = None

    def get(self, sessions: Sequence[SessionRecord], now: Optional[datetime] = None) -> PredictionModel:
        key = model_cache_key(sessions, self.tz)
        if self._model is None or key != self._key:
            self._model = build_model(sessions, now=now, tz=self.tz)
            self._key = key
        return self._model

    def clear(self) -> None:
        self._key = None
        self._model = None


def prediction_to_payload(result: Optional[PredictionResult]) -> Optional[Dict[str, object]]:
    if result is None:
        return None
    return {
        "predictedTime": result.predicted_time.isoformat(),
        "confidence": round(result.confidence, 4),
        "dayOfWeek": result.day_of_week,
        "dayName": DAY_NAMES[result.day_of_week],
        "bucket": result.bucket,
        "dayOffset": result.day_offset,
        "timeLabel": result.predicted_time.strftime("%H:%M"),
    }


def insight_to_payload(insight: PatternInsight) -> Dict[str, str]:
    return {"type": insight.type, "message": insight.message}


def model_summary(model: PredictionModel, now: Optional[datetime] = None, tz=None) -> Dict[str, object]:
    prediction = predict_next_session(model, now=now, tz=tz)
    return {
        "totalSessions": model.total_sessions,
        "sessionsUntilUnlock": sessions_until_unlock(model),
        "builtAt": model.last_updated.isoformat(),
        "dailyFrequency": [round(v, 4) for v in model.daily_frequency],
        "prediction": prediction_to_payload(prediction),
        "insights": [insight_to_payload(i) for i in get_insights(model)],
    }
