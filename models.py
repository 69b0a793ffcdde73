import json
from app import db
from timezone_utils import get_utc_now

def utc_now():
    """Return current UTC time for consistent database storage"""
    return get_utc_now()

# All timestamps in the database are stored in UTC

UNIT_KINDS = ('visit', 'transfer')


# Progress Record (device-local cache of in-progress work)
class ProgressRecord(db.Model):
    __tablename__ = 'progress_records'

    unit_id = db.Column(db.String(140), primary_key=True)  # Visit or Transfer name
    unit_kind = db.Column(db.String(20), nullable=False, default='visit')

    # JSON encoded collections
    completed_json = db.Column(db.Text, nullable=False, default='[]')
    skipped_json = db.Column(db.Text, nullable=False, default='[]')
    media_json = db.Column(db.Text, nullable=False, default='[]')
    results_json = db.Column(db.Text, nullable=False, default='{}')

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    @staticmethod
    def _decode(value, default):
        try:
            decoded = json.loads(value) if value else default
        except (json.JSONDecodeError, TypeError):
            return default
        return decoded if isinstance(decoded, type(default)) else default

    @property
    def completed(self):
        return self._decode(self.completed_json, [])

    @completed.setter
    def completed(self, keys):
        self.completed_json = json.dumps(sorted(keys))

    @property
    def skipped(self):
        return self._decode(self.skipped_json, [])

    @skipped.setter
    def skipped(self, keys):
        self.skipped_json = json.dumps(sorted(keys))

    @property
    def media(self):
        return self._decode(self.media_json, [])

    @media.setter
    def media(self, items):
        self.media_json = json.dumps(list(items))

    @property
    def results(self):
        return self._decode(self.results_json, {})

    @results.setter
    def results(self, mapping):
        self.results_json = json.dumps(mapping, sort_keys=True, default=str)

    def __repr__(self):
        return f"<ProgressRecord {self.unit_kind} {self.unit_id}>"


# Field Events Table (local audit trail of engine transitions)
class FieldEvent(db.Model):
    __tablename__ = 'field_events'

    id = db.Column(db.Integer, primary_key=True)
    unit_id = db.Column(db.String(140), nullable=False, index=True)
    event_type = db.Column(db.String(50), nullable=False)  # check_in, activity_completed, finalize_blocked, ...
    actor = db.Column(db.String(140), nullable=True)
    payload = db.Column(db.Text, nullable=True)  # JSON
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    @property
    def payload_data(self):
        try:
            return json.loads(self.payload) if self.payload else {}
        except (json.JSONDecodeError, TypeError):
            return {}

    def __repr__(self):
        return f"<FieldEvent {self.event_type} @ {self.unit_id}>"
