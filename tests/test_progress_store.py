"""
Tests for the local progress store.
"""
from datetime import timedelta
from unittest import mock

from sqlalchemy.exc import OperationalError

from field_entities import MediaRef
from progress_store import ProgressSnapshot, ProgressStore
from timezone_utils import get_utc_now


class TestRoundTrip:

    def test_snapshot_survives_restart(self, app, store):
        """Writing a record and reloading it in a fresh session yields the same snapshot"""
        from app import db

        snapshot = ProgressSnapshot(
            unit_id='VIS-1',
            completed=frozenset({'photos', 'stock_opname'}),
            skipped=frozenset({'payment'}),
            media=(MediaRef(id='F-1', url='/files/a.jpg'), MediaRef(id='F-2', url='/files/b.jpg', file_name='b.jpg')),
            results={'stock_opname': {'stock_counts': [{'item_code': 'A', 'quantity': 3, 'uom': None}]}},
        )
        store.save(snapshot)
        db.session.remove()

        reloaded = ProgressStore().load('VIS-1')
        assert reloaded == snapshot

    def test_missing_record_loads_as_none(self, store):
        assert store.load('VIS-404') is None


class TestWriteThrough:

    def test_mark_completed_creates_record(self, store):
        snapshot = store.mark_completed('VIS-1', 'photos', {'photo_count': 2})
        assert snapshot.completed == {'photos'}
        assert store.load('VIS-1').results['photos'] == {'photo_count': 2}

    def test_mark_skipped(self, store):
        store.mark_skipped('VIS-1', 'payment')
        assert store.load('VIS-1').skipped == {'payment'}

    def test_add_media_ignores_duplicates(self, store):
        media = MediaRef(id='F-1', url='/files/a.jpg')
        store.add_media('VIS-1', [media])
        store.add_media('VIS-1', [media])
        assert store.load('VIS-1').media == (media,)

    def test_set_result_overwrites(self, store):
        store.mark_completed('VIS-1', 'payment', {'payment_id': 'PAY-1'})
        store.set_result('VIS-1', 'payment', {'payment_id': 'PAY-2'})
        assert store.load('VIS-1').results['payment'] == {'payment_id': 'PAY-2'}

    def test_has_progress(self, store):
        assert store.mark_completed('VIS-1', 'photos').has_progress
        assert not ProgressSnapshot(unit_id='VIS-2').has_progress

    def test_purge(self, store):
        store.mark_completed('VIS-1', 'photos')
        assert store.purge('VIS-1') is True
        assert store.load('VIS-1') is None
        assert store.purge('VIS-1') is False

    def test_records_are_not_shared(self, store):
        store.mark_completed('VIS-1', 'photos')
        store.mark_completed('VIS-2', 'stock_opname')
        assert store.load('VIS-1').completed == {'photos'}
        assert store.load('VIS-2').completed == {'stock_opname'}


class TestEvents:

    def test_events_are_journaled(self, store):
        store.log_event('VIS-1', 'check_in', {'stop_idx': 2})
        store.log_event('VIS-1', 'activity_completed', {'activity': 'photos'})
        events = store.events_for('VIS-1')
        assert [e.event_type for e in events] == ['check_in', 'activity_completed']
        assert events[0].payload_data == {'stop_idx': 2}
        assert events[0].actor == 'agent-1'


class TestMaintenance:

    def test_pending_units(self, store):
        store.mark_completed('VIS-1', 'photos')
        store.add_media('ST-1', [MediaRef(id='F-1', url='/files/h.jpg')], unit_kind='transfer')

        assert {u['unit_id'] for u in store.pending_units()} == {'VIS-1', 'ST-1'}
        transfers = store.pending_units('transfer')
        assert len(transfers) == 1
        assert transfers[0]['media'] == 1

    def test_prune_old_events(self, app, store):
        from app import db

        old = store.log_event('VIS-1', 'check_in')
        old.created_at = get_utc_now() - timedelta(days=45)
        db.session.commit()
        store.log_event('VIS-1', 'activity_completed')

        assert store.prune_events(30) == 1
        assert [e.event_type for e in store.events_for('VIS-1')] == ['activity_completed']

    def test_progress_report_command(self, app, store):
        store.mark_completed('VIS-1', 'photos')
        result = app.test_cli_runner().invoke(args=['progress-report'])
        assert result.exit_code == 0
        assert 'VIS-1' in result.output
        assert 'completed=1' in result.output

    def test_progress_report_when_empty(self, app):
        result = app.test_cli_runner().invoke(args=['progress-report', '--kind', 'transfer'])
        assert 'No pending local progress' in result.output

    def test_prune_events_command(self, app, store):
        store.log_event('VIS-1', 'check_in')
        result = app.test_cli_runner().invoke(args=['prune-events', '--days', '30'])
        assert result.exit_code == 0
        assert 'Removed 0 event(s)' in result.output


class TestDegradation:

    def test_storage_failure_degrades_instead_of_raising(self, app):
        session = mock.MagicMock()
        session.get.side_effect = OperationalError('SELECT', {}, Exception('disk I/O error'))
        store = ProgressStore(session=session)

        assert store.load('VIS-1') is None
        assert store.degraded is True
        session.rollback.assert_called()

    def test_unreadable_record_is_not_overwritten(self, app):
        session = mock.MagicMock()
        session.get.side_effect = [OperationalError('SELECT', {}, Exception('database is locked')), None]
        store = ProgressStore(session=session)

        snapshot = store.mark_completed('VIS-1', 'photos')
        assert snapshot.completed == {'photos'}
        assert session.get.call_count == 1
        session.add.assert_not_called()
        session.commit.assert_not_called()

    def test_failed_save_returns_in_memory_snapshot(self, app):
        session = mock.MagicMock()
        session.get.side_effect = OperationalError('SELECT', {}, Exception('disk full'))
        session.query.side_effect = OperationalError('DELETE', {}, Exception('disk full'))
        store = ProgressStore(session=session)

        snapshot = store.mark_completed('VIS-1', 'photos')
        assert snapshot.completed == {'photos'}
        assert store.degraded is True
        assert store.purge('VIS-1') is False
