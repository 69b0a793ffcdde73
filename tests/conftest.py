"""
Test configuration and fixtures for pytest tests.
Provides isolated test environment with in-memory SQLite database and an
in-memory stand-in for the FRM backend.
"""

import copy
import json
import os

import pytest

# Must be set before the app module is imported anywhere
os.environ['SESSION_SECRET'] = 'test-secret-key-for-testing'
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'

from field_entities import MediaRef, Route, Transfer, Visit
from field_errors import FrmApiError
from frm_client import FinalizeResponse


class FakeFrmBackend:
    """
    In-memory FRM backend.

    Keeps backend-shaped dicts and answers with parsed entities, the same way
    FrmBackend does. Every call is recorded in `calls`; setting
    `fail[op] = exc` makes that operation raise.
    """

    def __init__(self):
        self.routes = {}
        self.today_route = None
        self.visits = {}
        self.visit_media = {}
        self.transfers = {}
        self.finalize_warnings = {}
        self.finalize_side_effects = 0
        self.uploads = 0
        self.fail = {}
        self.calls = []

    def _record(self, op, *args):
        self.calls.append((op,) + args)
        exc = self.fail.get(op)
        if exc is not None:
            raise exc

    def calls_to(self, op):
        return [c for c in self.calls if c[0] == op]

    # --- builders ---

    def add_route(self, name='RT-0001', stop_types=('Sales Visit', 'Sales Visit', 'Sales Visit'),
                  status='in_progress', coordinates=None):
        stops = []
        for position, stop_type in enumerate(stop_types, start=1):
            stop = {
                'idx': position,
                'sequence': position,
                'stop_type': stop_type,
                'status': 'pending',
                'customer': f'CUST-{position}',
                'stop_name': f'Customer {position}',
            }
            if coordinates:
                stop['latitude'], stop['longitude'] = coordinates[position - 1]
            stops.append(stop)
        self.routes[name] = {
            'name': name,
            'route_date': '2026-10-16',
            'assigned_user': 'agent-1',
            'status': status,
            'stops': stops,
        }
        self.today_route = name
        return name

    def add_transfer(self, name='ST-0001', item_count=5, status='pending', expected_qty=10):
        self.transfers[name] = {
            'name': name,
            'transfer_type': 'wh_to_dc',
            'status': status,
            'source_warehouse': 'Main WH',
            'dest_warehouse': 'DC North',
            'items': [
                {
                    'product': f'ITEM-{n}',
                    'product_name': f'Item {n}',
                    'expected_qty': expected_qty,
                    'verified_qty': 0,
                    'damaged_qty': 0,
                    'missing_qty': 0,
                    'check_status': 'pending',
                }
                for n in range(1, item_count + 1)
            ],
            'delivery_orders': [
                {'delivery_order': 'DO-0001', 'customer_name': 'Customer 1', 'item_count': 2},
            ],
        }
        return name

    def set_stop(self, route_id, idx, **fields):
        for stop in self.routes[route_id]['stops']:
            if stop['idx'] == idx:
                stop.update(fields)

    def _stop(self, route_id, idx):
        for stop in self.routes[route_id]['stops']:
            if stop['idx'] == idx:
                return stop
        raise FrmApiError(f"Stop {idx} not found", status_code=404)

    def _route(self, route_id):
        if route_id not in self.routes:
            raise FrmApiError(f"Route {route_id} not found", status_code=404)
        return Route.from_dict(copy.deepcopy(self.routes[route_id]))

    # --- routes ---

    def get_todays_route(self):
        self._record('get_todays_route')
        return self._route(self.today_route) if self.today_route else None

    def get_route(self, route_id):
        self._record('get_route', route_id)
        return self._route(route_id)

    def start_route(self, route_id, latitude=None, longitude=None):
        self._record('start_route', route_id, latitude, longitude)
        self.routes[route_id]['status'] = 'in_progress'
        return self._route(route_id)

    def end_route(self, route_id, latitude=None, longitude=None):
        self._record('end_route', route_id, latitude, longitude)
        self.routes[route_id]['status'] = 'completed'
        return self._route(route_id)

    def arrive_at_stop(self, route_id, stop_idx, latitude=None, longitude=None):
        self._record('arrive_at_stop', route_id, stop_idx, latitude, longitude)
        stop = self._stop(route_id, stop_idx)
        stop.update(status='arrived', arrival_latitude=latitude, arrival_longitude=longitude,
                    actual_arrival='2026-10-16 08:30:00')
        if stop['stop_type'] == 'Sales Visit' and not stop.get('sales_visit'):
            visit_id = f"VIS-{route_id}-{stop_idx}"
            stop['sales_visit'] = visit_id
            self.visits.setdefault(visit_id, {'name': visit_id, 'status': 'in_progress',
                                              'customer': stop['customer'], 'activities': []})
        return self._route(route_id)

    def complete_stop(self, route_id, stop_idx):
        self._record('complete_stop', route_id, stop_idx)
        self._stop(route_id, stop_idx)['status'] = 'completed'
        return self._route(route_id)

    def skip_stop(self, route_id, stop_idx, reason):
        self._record('skip_stop', route_id, stop_idx, reason)
        stop = self._stop(route_id, stop_idx)
        stop.update(status='skipped', skip_reason=reason)
        if stop.get('sales_visit') in self.visits:
            self.visits[stop['sales_visit']]['status'] = 'cancelled'
        return self._route(route_id)

    def add_unplanned_stop(self, route_id, stop_descriptor):
        self._record('add_unplanned_stop', route_id, stop_descriptor)
        stops = self.routes[route_id]['stops']
        next_idx = max((s['idx'] for s in stops), default=0) + 1
        stops.append({
            'idx': next_idx,
            'sequence': next_idx,
            'stop_type': stop_descriptor.get('stop_type'),
            'status': 'pending',
            'customer': stop_descriptor.get('customer'),
            'stop_name': stop_descriptor.get('location_name') or stop_descriptor.get('customer'),
            'is_unplanned': 1,
        })
        return self._route(route_id)

    # --- visits ---

    def add_visit(self, visit_id, status='in_progress', activities=None):
        self.visits[visit_id] = {'name': visit_id, 'status': status, 'activities': activities or []}

    def get_visit(self, visit_id):
        self._record('get_visit', visit_id)
        if visit_id not in self.visits:
            raise FrmApiError(f"Visit {visit_id} not found", status_code=404)
        return Visit.from_dict(copy.deepcopy(self.visits[visit_id]))

    def mark_activity_completed(self, visit_id, activity_type, activity_name, status=None, result_data=None):
        self._record('mark_activity_completed', visit_id, activity_type, activity_name, status, result_data)
        rows = self.visits[visit_id]['activities']
        rows[:] = [r for r in rows if r['activity_name'] != activity_name]
        rows.append({
            'activity_type': activity_type,
            'activity_name': activity_name,
            'status': status or 'completed',
            'result': json.dumps(result_data or {}),
        })
        return {'success': True}

    def get_visit_media(self, visit_id):
        self._record('get_visit_media', visit_id)
        return [MediaRef.from_dict(m) for m in self.visit_media.get(visit_id, [])]

    def finalize_visit(self, visit_id):
        self._record('finalize_visit', visit_id)
        warnings = self.finalize_warnings.get(visit_id)
        if warnings:
            return FinalizeResponse(visit_id=visit_id, status='in_progress', warnings=list(warnings))
        visit = self.visits[visit_id]
        if visit['status'] != 'completed':
            visit['status'] = 'completed'
            self.finalize_side_effects += 1
        return FinalizeResponse(visit_id=visit_id, status='completed')

    def upload_media(self, file_name, content, doctype=None, docname=None, fieldname=None):
        self._record('upload_media', file_name, doctype, docname)
        self.uploads += 1
        return MediaRef(id=f"FILE-{self.uploads}", url=f"/files/{file_name}", file_name=file_name)

    # --- transfers ---

    def _transfer(self, transfer_id):
        if transfer_id not in self.transfers:
            raise FrmApiError(f"Transfer {transfer_id} not found", status_code=404)
        return Transfer.from_dict(copy.deepcopy(self.transfers[transfer_id]))

    def get_transfer(self, transfer_id):
        self._record('get_transfer', transfer_id)
        return self._transfer(transfer_id)

    def start_loading_check(self, transfer_id):
        self._record('start_loading_check', transfer_id)
        self.transfers[transfer_id]['status'] = 'loading'
        return None

    def update_item_check(self, transfer_id, product, verified_qty, damaged_qty, missing_qty, check_status):
        self._record('update_item_check', transfer_id, product, verified_qty, damaged_qty, missing_qty, check_status)
        for item in self.transfers[transfer_id]['items']:
            if item['product'] == product:
                item.update(verified_qty=verified_qty, damaged_qty=damaged_qty,
                            missing_qty=missing_qty, check_status=check_status)
        return None

    def verify_all_items(self, transfer_id):
        self._record('verify_all_items', transfer_id)
        for item in self.transfers[transfer_id]['items']:
            if item['check_status'] in ('pending', 'partial'):
                item.update(verified_qty=item['expected_qty'], damaged_qty=0, missing_qty=0,
                            check_status='verified')
        return None

    def complete_loading(self, transfer_id):
        self._record('complete_loading', transfer_id)
        transfer = self.transfers[transfer_id]
        if any(i['check_status'] in ('pending', 'partial') for i in transfer['items']):
            raise FrmApiError("All items must be checked before loading is complete", status_code=417)
        transfer['status'] = 'in_transit'
        return None

    def arrive_at_destination(self, transfer_id, latitude=None, longitude=None):
        self._record('arrive_at_destination', transfer_id, latitude, longitude)
        self.transfers[transfer_id]['status'] = 'arrived'
        return None

    def complete_handoff(self, transfer_id, received_by, photo=None, notes=None):
        self._record('complete_handoff', transfer_id, received_by, photo, notes)
        transfer = self.transfers[transfer_id]
        transfer.update(status='completed', received_by=received_by,
                        handoff_photo=photo.url if photo else None, handoff_notes=notes)
        for link in transfer['delivery_orders']:
            link['delivery_status'] = 'ready'
        return None

    def return_transfer(self, transfer_id, reason):
        self._record('return_transfer', transfer_id, reason)
        self.transfers[transfer_id]['status'] = 'returned'
        return None


@pytest.fixture(scope='function')
def app():
    """Create a test Flask app with a fresh in-memory progress store."""
    from app import app, db
    from routes_field_api import field_api_bp

    app.config['TESTING'] = True
    if 'field_api' not in app.blueprints:
        app.register_blueprint(field_api_bp)
    app.extensions['field_sessions'] = {}

    with app.app_context():
        db.drop_all()
        db.create_all()
        yield app
        db.session.remove()


@pytest.fixture(scope='function')
def backend():
    return FakeFrmBackend()


@pytest.fixture(scope='function')
def store(app):
    from progress_store import ProgressStore
    return ProgressStore(actor='agent-1')


@pytest.fixture(scope='function')
def ctx(app, backend, store):
    """Session context for agent-1 with a working location fix"""
    from session_context import SessionContext
    return SessionContext(
        'agent-1',
        backend,
        store=store,
        location_provider=lambda: (35.1856, 33.3823),
        location_timeout=1,
        strict_sequence=False,
    )


@pytest.fixture(scope='function')
def client(app, backend):
    """Create a test client for the Flask app, wired to the fake backend."""
    app.config['FIELD_BACKEND_FACTORY'] = lambda agent_id: backend
    app.config['FIELD_LOCATION_TIMEOUT'] = 1
    app.config['FIELD_STRICT_SEQUENCE'] = False
    return app.test_client()
