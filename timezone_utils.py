"""
Timezone utility functions for field execution
"""
import pytz
from datetime import datetime, timezone


def get_agent_timezone(tz_name=None):
    """Get the configured agent timezone, defaults to FIELD_TIMEZONE or UTC"""
    from config_frm import FIELD_TIMEZONE
    try:
        return pytz.timezone(tz_name or FIELD_TIMEZONE)
    except pytz.UnknownTimeZoneError:
        return pytz.UTC


def get_utc_now():
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def get_agent_today(tz_name=None):
    """
    The calendar day the agent is working in.
    A route is one per agent per day, and the day is the agent's local day,
    not the UTC one.
    """
    return get_utc_now().astimezone(get_agent_timezone(tz_name)).date()


def parse_server_datetime(value):
    """
    Parse a datetime sent by the backend.
    The backend sends naive 'YYYY-MM-DD HH:MM:SS[.ffffff]' strings in UTC or ISO strings.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip().replace('T', ' ')
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None

    if dt.tzinfo is None:
        # Assume UTC if no timezone info
        dt = pytz.UTC.localize(dt)
    return dt.astimezone(timezone.utc)


def format_server_datetime(dt):
    """Format a datetime the way the backend expects it (naive UTC)"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime('%Y-%m-%d %H:%M:%S')
