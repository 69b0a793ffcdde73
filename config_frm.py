"""
FRM Backend Configuration
Centralized configuration for the field execution engine and its backend
"""
import os

# === FRM BACKEND CONFIG ===
FRM_BASE_URL = os.getenv('FRM_BASE_URL', '').rstrip('/')
FRM_API_KEY = os.getenv('FRM_API_KEY', '')
FRM_API_SECRET = os.getenv('FRM_API_SECRET', '')

# Connection timeouts: (connect_timeout, read_timeout)
FRM_CONNECT_TIMEOUT = float(os.getenv('FRM_CONNECT_TIMEOUT', '10'))
FRM_READ_TIMEOUT = float(os.getenv('FRM_READ_TIMEOUT', '30'))

# Retries apply to reads only; mutating calls are never retried automatically
# because the backend may already have applied them (double-reported quantities)
FRM_GET_RETRIES = int(os.getenv('FRM_GET_RETRIES', '3'))

# === FIELD ENGINE CONFIG ===
# Maximum seconds a check-in/arrival waits for a location fix
FIELD_LOCATION_TIMEOUT = float(os.getenv('FIELD_LOCATION_TIMEOUT', '10'))

# When true, only the first pending stop (or an unplanned stop) can be checked into
FIELD_STRICT_SEQUENCE = os.getenv('FIELD_STRICT_SEQUENCE', 'false').lower() in ('1', 'true', 'yes', 'y')

FIELD_TIMEZONE = os.getenv('FIELD_TIMEZONE', 'UTC')

# Activity plan for a sales visit when the backend does not send one.
# (key, backend activity type, backend activity name, mandatory)
DEFAULT_VISIT_ACTIVITIES = [
    ('photos', 'Photo', 'Take Photos', True),
    ('stock_opname', 'Stock Check', 'Stock Opname', True),
    ('payment', 'Custom', 'Payment Collection', False),
    ('sales_order', 'Custom', 'Sales Order', False),
    ('competitor_survey', 'Competitor Tracking', 'Competitor Survey', False),
]


def validate_config():
    """Validate that required FRM config is set"""
    if not FRM_BASE_URL or not FRM_API_KEY or not FRM_API_SECRET:
        raise ValueError(
            "FRM_BASE_URL, FRM_API_KEY and FRM_API_SECRET environment variables must be set. "
            "Please configure these in your .env file or deployment secrets."
        )
