"""
Progress Store

Durable, device-local cache of in-progress work, one record per visit or
transfer. Every local transition is written through immediately so that a
process restart (or a dead battery) does not lose field work that has not
been confirmed by the server yet.

Storage failures never stop the engine: they are logged, the store flags
itself as degraded, and callers keep working from server state alone.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Dict, FrozenSet, Tuple

from sqlalchemy.exc import SQLAlchemyError

from field_entities import MediaRef
from field_errors import StorageUnavailableError
from timezone_utils import get_utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    unit_id: str
    unit_kind: str = 'visit'
    completed: FrozenSet[str] = frozenset()
    skipped: FrozenSet[str] = frozenset()
    media: Tuple[MediaRef, ...] = ()
    results: Dict[str, dict] = field(default_factory=dict)

    @property
    def has_progress(self):
        """True once anything was completed, skipped or captured"""
        return bool(self.completed or self.skipped or self.media)

    def with_completed(self, key, payload=None):
        results = dict(self.results)
        if payload is not None:
            results[key] = payload
        return replace(self, completed=self.completed | {key}, skipped=self.skipped - {key}, results=results)

    def with_skipped(self, key):
        return replace(self, skipped=self.skipped | {key}, completed=self.completed - {key})

    def with_media(self, media_refs):
        known = {m.id for m in self.media}
        added = tuple(m for m in media_refs if m.id not in known)
        return replace(self, media=self.media + added)

    def with_result(self, key, payload):
        results = dict(self.results)
        results[key] = payload
        return replace(self, results=results)

    def to_dict(self):
        return {
            'unit_id': self.unit_id,
            'unit_kind': self.unit_kind,
            'completed': sorted(self.completed),
            'skipped': sorted(self.skipped),
            'media': [m.to_dict() for m in self.media],
            'results': dict(self.results),
        }


def empty_snapshot(unit_id, unit_kind='visit'):
    return ProgressSnapshot(unit_id=unit_id, unit_kind=unit_kind)


class ProgressStore:
    """SQLAlchemy-backed progress cache keyed by visit/transfer id."""

    def __init__(self, session=None, actor=None):
        self._session = session
        self.actor = actor
        self.degraded = False

    @property
    def session(self):
        if self._session is not None:
            return self._session
        from app import db
        return db.session

    def _run(self, operation, fn):
        """Run a storage operation, turning database failures into StorageUnavailableError"""
        try:
            result = fn()
            self.degraded = False
            return result
        except SQLAlchemyError as e:
            try:
                self.session.rollback()
            except SQLAlchemyError:
                logger.debug("Rollback after progress store failure also failed", exc_info=True)
            self.degraded = True
            logger.error(f"Progress store {operation} failed: {str(e)}")
            raise StorageUnavailableError(f"Progress store {operation} failed") from e

    # --- reads ---

    def load(self, unit_id):
        """
        Load the cached progress for a unit of work.

        Returns:
            ProgressSnapshot or None when nothing is cached (or storage is unavailable)
        """
        from models import ProgressRecord

        def _load():
            record = self.session.get(ProgressRecord, unit_id)
            if record is None:
                return None
            return ProgressSnapshot(
                unit_id=record.unit_id,
                unit_kind=record.unit_kind,
                completed=frozenset(record.completed),
                skipped=frozenset(record.skipped),
                media=tuple(MediaRef.from_dict(m) for m in record.media if isinstance(m, dict)),
                results=record.results,
            )

        try:
            return self._run('load', _load)
        except StorageUnavailableError:
            return None

    # --- writes ---

    def save(self, snapshot):
        """Persist a snapshot, replacing whatever was cached for the unit"""
        from models import ProgressRecord

        def _save():
            record = self.session.get(ProgressRecord, snapshot.unit_id)
            if record is None:
                record = ProgressRecord(unit_id=snapshot.unit_id)
                self.session.add(record)
            record.unit_kind = snapshot.unit_kind
            record.completed = snapshot.completed
            record.skipped = snapshot.skipped
            record.media = [m.to_dict() for m in snapshot.media]
            record.results = snapshot.results
            self.session.commit()
            return snapshot

        try:
            return self._run('save', _save)
        except StorageUnavailableError:
            # Caller keeps the in-memory snapshot; only offline resilience is lost
            return snapshot

    def _update(self, unit_id, unit_kind, change):
        current = self.load(unit_id)
        if current is None and self.degraded:
            # An unreadable record must not be overwritten with a partial one
            logger.warning(f"Progress for {unit_id} not updated, stored record could not be read")
            return change(empty_snapshot(unit_id, unit_kind))
        current = current or empty_snapshot(unit_id, unit_kind)
        return self.save(change(current))

    def mark_completed(self, unit_id, key, payload=None, unit_kind='visit'):
        return self._update(unit_id, unit_kind, lambda s: s.with_completed(key, payload))

    def mark_skipped(self, unit_id, key, unit_kind='visit'):
        return self._update(unit_id, unit_kind, lambda s: s.with_skipped(key))

    def add_media(self, unit_id, media_refs, unit_kind='visit'):
        return self._update(unit_id, unit_kind, lambda s: s.with_media(media_refs))

    def set_result(self, unit_id, key, payload, unit_kind='visit'):
        return self._update(unit_id, unit_kind, lambda s: s.with_result(key, payload))

    def purge(self, unit_id):
        """
        Delete the cached progress for a unit of work.

        Returns:
            bool: True if a record was removed
        """
        from models import ProgressRecord

        def _purge():
            removed = self.session.query(ProgressRecord).filter_by(unit_id=unit_id).delete()
            self.session.commit()
            return removed > 0

        try:
            removed = self._run('purge', _purge)
        except StorageUnavailableError:
            return False
        if removed:
            logger.info(f"Purged local progress for {unit_id}")
        return removed

    def log_event(self, unit_id, event_type, payload=None):
        """Append to the local audit trail. Best effort."""
        from models import FieldEvent

        def _log():
            event = FieldEvent(
                unit_id=unit_id,
                event_type=event_type,
                actor=self.actor,
                payload=json.dumps(payload, default=str) if payload is not None else None,
            )
            self.session.add(event)
            self.session.commit()
            return event

        try:
            return self._run('log_event', _log)
        except StorageUnavailableError:
            return None

    def events_for(self, unit_id):
        from models import FieldEvent

        def _events():
            return (self.session.query(FieldEvent)
                    .filter_by(unit_id=unit_id)
                    .order_by(FieldEvent.id)
                    .all())

        try:
            return self._run('events_for', _events)
        except StorageUnavailableError:
            return []

    # --- maintenance ---

    def pending_units(self, unit_kind=None):
        """Cached records still waiting for their unit of work to finish, oldest first"""
        from models import ProgressRecord

        def _pending():
            query = self.session.query(ProgressRecord)
            if unit_kind:
                query = query.filter_by(unit_kind=unit_kind)
            return [
                {
                    'unit_id': r.unit_id,
                    'unit_kind': r.unit_kind,
                    'completed': len(r.completed),
                    'skipped': len(r.skipped),
                    'media': len(r.media),
                    'updated_at': r.updated_at,
                }
                for r in query.order_by(ProgressRecord.updated_at).all()
            ]

        try:
            return self._run('pending_units', _pending)
        except StorageUnavailableError:
            return []

    def prune_events(self, older_than_days=30):
        """Delete journal entries older than the given age. Returns the number removed."""
        from models import FieldEvent

        cutoff = get_utc_now() - timedelta(days=older_than_days)

        def _prune():
            removed = self.session.query(FieldEvent).filter(FieldEvent.created_at < cutoff).delete()
            self.session.commit()
            return removed

        try:
            removed = self._run('prune_events', _prune)
        except StorageUnavailableError:
            return 0
        logger.info(f"Pruned {removed} field event(s) older than {older_than_days} days")
        return removed
