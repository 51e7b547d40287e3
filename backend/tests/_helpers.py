from datetime import date, datetime, timedelta, timezone

from healthcast.schemas.forecast import TimePoint


def unwrap(j):
    """Return API data payload from the response envelope."""
    if isinstance(j, dict) and "ok" in j and "data" in j:
        return j["data"]
    return j


def is_enveloped(j) -> bool:
    return isinstance(j, dict) and "ok" in j and "data" in j


def monthly_points(values, start=date(2020, 1, 1)):
    out = []
    year, month = start.year, start.month
    for v in values:
        out.append(TimePoint(period=date(year, month, 1), value=v))
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return out


def daily_points(values, start=date(2024, 1, 1)):
    return [TimePoint(period=start + timedelta(days=i), value=v) for i, v in enumerate(values)]


def utc(y, m, d, hour=12):
    return datetime(y, m, d, hour, tzinfo=timezone.utc)
