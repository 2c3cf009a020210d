"""Date manipulation utilities"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def month_key(moment: datetime) -> str:
    """Bucket a timestamp into its YYYY-MM month"""
    return f"{moment.year}-{moment.month:02d}"


def time_bucket(moment: datetime, window_seconds: int) -> int:
    """Index of the fixed-size window containing moment"""
    return int(moment.timestamp()) // max(window_seconds, 1)
