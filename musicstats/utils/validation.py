"""
Input validation utilities
"""
import re
from typing import Any, Dict, Optional, Tuple

REQUIRED_PLAY_FIELDS = ('songId', 'songTitle', 'artistId', 'artistName', 'timestamp')

# Google OAuth desktop client ids look like "<digits>-<hash>.apps.googleusercontent.com"
CLIENT_ID_PATTERN = re.compile(r'^[0-9]+-[a-z0-9]+\.apps\.googleusercontent\.com$')


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_play_record(data: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate a play event before it is appended to the log

    Args:
        data: camelCase play event as delivered by the host

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Play event must be an object"

    for field_name in REQUIRED_PLAY_FIELDS:
        if data.get(field_name) in (None, ''):
            return False, f"Missing required field: {field_name}"

    if not _is_number(data['timestamp']) or data['timestamp'] < 0:
        return False, "timestamp must be a non-negative epoch millisecond value"

    for field_name in ('durationListened', 'totalDuration'):
        value = data.get(field_name, 0)
        if not _is_number(value):
            return False, f"{field_name} must be a number"
        if value < 0:
            return False, f"{field_name} cannot be negative"

    for field_name in ('skipped', 'completed'):
        if field_name in data and not isinstance(data[field_name], bool):
            return False, f"{field_name} must be true or false"

    return True, None


def validate_client_id(client_id: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a Google OAuth client id

    Args:
        client_id: Client id to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not client_id or not client_id.strip():
        return False, "Client ID cannot be empty"

    if not CLIENT_ID_PATTERN.match(client_id.strip()):
        return False, "Client ID should end with .apps.googleusercontent.com"

    return True, None


def validate_date_key(value: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a YYYY-MM-DD date key

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not re.match(r'^\d{4}-\d{2}-\d{2}$', value or ''):
        return False, "Date must use the YYYY-MM-DD format"
    return True, None
