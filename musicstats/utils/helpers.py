"""
Utility helper functions for Music-Stats
Time bucketing, rounding, hashing, encoding and formatting helpers
"""

import base64
import hashlib
import math
import time
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Union


def now_ms() -> int:
    """Get current time as epoch milliseconds"""
    return int(time.time() * 1000)


def to_local_datetime(timestamp_ms: Union[int, float]) -> datetime:
    """
    Convert epoch milliseconds to a naive local datetime

    Args:
        timestamp_ms: Epoch milliseconds

    Returns:
        Local datetime (host timezone)
    """
    return datetime.fromtimestamp(timestamp_ms / 1000.0)


def local_date_key(timestamp_ms: Union[int, float]) -> str:
    """
    Get local calendar date key for a timestamp

    Args:
        timestamp_ms: Epoch milliseconds

    Returns:
        Date string in YYYY-MM-DD format
    """
    return to_local_datetime(timestamp_ms).strftime('%Y-%m-%d')


def year_month_key(timestamp_ms: Union[int, float]) -> str:
    """
    Get local year-month key for a timestamp

    Args:
        timestamp_ms: Epoch milliseconds

    Returns:
        Month string in YYYY-MM format
    """
    return to_local_datetime(timestamp_ms).strftime('%Y-%m')


def days_between(start_key: str, end_key: str) -> int:
    """
    Count whole calendar days from one YYYY-MM-DD key to another

    Args:
        start_key: Earlier date key
        end_key: Later date key

    Returns:
        Day difference (negative when end_key is before start_key)
    """
    start = date.fromisoformat(start_key)
    end = date.fromisoformat(end_key)
    return (end - start).days


def round_half_up(value: float, digits: int = 0) -> float:
    """
    Round half away from negative infinity, like JavaScript Math.round

    Python's built-in round() uses banker's rounding, which makes 2.5 round
    to 2. Stored aggregates must round 2.5 to 3.

    Args:
        value: Number to round
        digits: Decimal places to keep

    Returns:
        Rounded value (int when digits is 0)
    """
    factor = 10 ** digits
    rounded = math.floor(value * factor + 0.5) / factor
    if digits == 0:
        return int(rounded)
    return rounded


def format_duration(seconds: Union[int, float]) -> str:
    """
    Format duration in seconds to human-readable string

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 0:
        return "0:00"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_minutes(minutes: Union[int, float]) -> str:
    """
    Format a listening time in minutes for display

    Args:
        minutes: Listening time in minutes

    Returns:
        String like "45 min" or "12h 05m"
    """
    if minutes < 60:
        return f"{int(minutes)} min"
    hours = int(minutes // 60)
    return f"{hours}h {int(minutes % 60):02d}m"


def base64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding, as used by PKCE"""
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def sha256_hex(data: Union[str, bytes]) -> str:
    """
    Calculate SHA-256 hex digest

    Args:
        data: Text (UTF-8 encoded first) or raw bytes

    Returns:
        Lowercase hex digest
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """
    Truncate string to maximum length

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated string
    """
    if len(text) <= max_length:
        return text

    return text[:max_length - len(suffix)] + suffix


def format_timestamp(timestamp_ms: Optional[Union[int, float]]) -> str:
    """
    Format epoch milliseconds for display

    Args:
        timestamp_ms: Epoch milliseconds, or None/0 when never set

    Returns:
        Local time string, or "never"
    """
    if not timestamp_ms:
        return "never"
    return to_local_datetime(timestamp_ms).strftime('%Y-%m-%d %H:%M:%S')


def ensure_directory(path: Union[str, Path]) -> Path:
    """
    Ensure directory exists, create if necessary

    Args:
        path: Directory path

    Returns:
        Path object
    """
    path = Path(path).expanduser()
    path.mkdir(parents=True, exist_ok=True)
    return path


def create_export_filename(directory: Union[str, Path], when: Optional[datetime] = None) -> Path:
    """
    Create a dated filename for a manual stats export

    Args:
        directory: Target directory
        when: Export time, defaults to now

    Returns:
        Path like <directory>/music-stats-export-2024-05-01.json
    """
    when = when or datetime.now()
    return Path(directory) / f"music-stats-export-{when.strftime('%Y-%m-%d')}.json"


def create_backup_filename(original_path: Union[str, Path]) -> Path:
    """
    Create backup filename with timestamp

    Args:
        original_path: Original file path

    Returns:
        Backup file path
    """
    path = Path(original_path)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')

    if path.suffix:
        backup_name = f"{path.stem}.backup_{timestamp}{path.suffix}"
    else:
        backup_name = f"{path.name}.backup_{timestamp}"

    return path.parent / backup_name
