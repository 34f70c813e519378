"""Timeframe durations and UTC calendar helpers."""

from datetime import datetime, timedelta, timezone

TIMEFRAME_MINUTES = {
    "1m": 1,
    "3m": 3,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "4h": 240,
    "1d": 1440,
}


def timeframe_duration(timeframe: str) -> timedelta | None:
    """Get the nominal duration of one candle, or None for unknown timeframes."""
    minutes = TIMEFRAME_MINUTES.get(timeframe)
    if minutes is None:
        return None
    return timedelta(minutes=minutes)


def closed_cutoff(timeframe: str, now: datetime) -> datetime | None:
    """Candles strictly older than this timestamp are guaranteed closed."""
    duration = timeframe_duration(timeframe)
    if duration is None:
        return None
    return now - duration


def is_closed_candle(timestamp: datetime, timeframe: str, now: datetime) -> bool:
    """Check whether a candle opened at ``timestamp`` has fully closed."""
    cutoff = closed_cutoff(timeframe, now)
    if cutoff is None:
        return False
    return timestamp < cutoff


def start_of_utc_day(moment: datetime) -> datetime:
    """Midnight UTC of the day containing ``moment``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def utc_day_key(moment: datetime) -> str:
    """ISO date string used to key daily accumulators."""
    return start_of_utc_day(moment).date().isoformat()
