"""
Field API Blueprint
JSON endpoints through which the agent's device drives the field execution engine
"""
from flask import Blueprint, request, jsonify, current_app
from functools import wraps
from werkzeug.exceptions import HTTPException
import logging
import threading

from app import db
from field_entities import MediaRef, result_from_payload
from field_errors import (
    FieldValidationError, OperationInProgressError, FrmNetworkError, FrmApiError
)
from frm_client import FrmBackend, set_correlation_id, clear_correlation_id
from location_utils import reading_from_values
from session_context import SessionContext
import services_reconciliation as reconciliation
import services_stop_sequencer as sequencer
import services_transfer_sequencer as transfers
import services_visit_completion as completion
from services_routing import suggest_visiting_order

logger = logging.getLogger(__name__)

field_api_bp = Blueprint('field_api', __name__, url_prefix='/api/field')

_sessions_lock = threading.Lock()


def _default_backend_factory(agent_id):
    return FrmBackend.from_env()


def get_session_context(agent_id):
    """One session per agent, kept for the lifetime of the app"""
    sessions = current_app.extensions.setdefault('field_sessions', {})
    with _sessions_lock:
        ctx = sessions.get(agent_id)
        if ctx is None:
            factory = current_app.config.get('FIELD_BACKEND_FACTORY') or _default_backend_factory
            ctx = SessionContext(
                agent_id,
                factory(agent_id),
                location_timeout=current_app.config.get('FIELD_LOCATION_TIMEOUT'),
                strict_sequence=current_app.config.get('FIELD_STRICT_SEQUENCE'),
            )
            sessions[agent_id] = ctx
            logger.info(f"Opened field session for agent {agent_id}")
    return ctx


def _request_location_provider(data):
    """Location comes from the device with the request; missing values mean unknown"""
    def provider():
        return reading_from_values(data.get('latitude'), data.get('longitude'), data.get('accuracy'))
    return provider


def agent_id_required(f):
    """Decorator to require agent ID from x-agent-id header"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        agent_id = request.headers.get('x-agent-id')
        if not agent_id:
            return jsonify({'error': 'Missing agent id'}), 401
        request.agent_id = agent_id
        request.field_ctx = get_session_context(agent_id)
        request.location_provider = _request_location_provider(request.get_json(silent=True) or {})
        set_correlation_id(request.headers.get('x-correlation-id'))
        try:
            return f(*args, **kwargs)
        finally:
            clear_correlation_id()
    return decorated_function


# --- error mapping ---

@field_api_bp.errorhandler(FieldValidationError)
def handle_validation_error(e):
    return jsonify({'error': e.message, 'reasons': e.reasons}), 422


@field_api_bp.errorhandler(OperationInProgressError)
def handle_in_progress(e):
    return jsonify({'error': str(e)}), 409


@field_api_bp.errorhandler(FrmNetworkError)
def handle_network_error(e):
    return jsonify({'error': str(e), 'retry': True}), 503


@field_api_bp.errorhandler(FrmApiError)
def handle_api_error(e):
    return jsonify({'error': e.message, 'status_code': e.status_code}), 502


@field_api_bp.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    db.session.rollback()
    logger.error(f"Unexpected error in field API {request.path}: {str(e)}", exc_info=True)
    return jsonify({'error': 'Internal server error'}), 500


def _payload():
    return request.get_json(silent=True) or {}


def _route_response(ctx):
    return jsonify(sequencer.describe_route(ctx.route, ctx.strict_sequence))


# --- route ---

@field_api_bp.route('/health', methods=['GET'])
def health():
    """Health check endpoint"""
    return jsonify({'ok': True, 'service': 'field-api'})


@field_api_bp.route('/route', methods=['GET'])
@agent_id_required
def get_route():
    """Today's route with the state of every stop"""
    ctx = request.field_ctx
    if ctx.route is None:
        sequencer.load_todays_route(ctx)
    elif request.args.get('refresh'):
        sequencer.refresh_route(ctx)
    if ctx.route is None:
        return jsonify({'error': 'No route planned for today'}), 404
    return _route_response(ctx)


@field_api_bp.route('/route/start', methods=['POST'])
@agent_id_required
def start_route():
    ctx = request.field_ctx
    sequencer.start_route(ctx, location_provider=request.location_provider)
    return _route_response(ctx)


@field_api_bp.route('/route/end', methods=['POST'])
@agent_id_required
def end_route():
    ctx = request.field_ctx
    sequencer.end_route(ctx, location_provider=request.location_provider)
    return _route_response(ctx)


@field_api_bp.route('/route/suggested-order', methods=['GET'])
@agent_id_required
def suggested_order():
    ctx = request.field_ctx
    if ctx.route is None:
        raise FieldValidationError("No route loaded for this agent")
    lat = request.args.get('latitude', type=float)
    lng = request.args.get('longitude', type=float)
    return jsonify(suggest_visiting_order(ctx.route.stops, start_lat=lat, start_lng=lng))


# --- stops ---

@field_api_bp.route('/stops/<int:stop_idx>/check-in', methods=['POST'])
@agent_id_required
def check_in(stop_idx):
    ctx = request.field_ctx
    result = sequencer.check_in(ctx, stop_idx, location_provider=request.location_provider)
    body = sequencer.describe_route(ctx.route, ctx.strict_sequence)
    body['location_known'] = result.location.known
    body['visit'] = result.workspace.to_dict() if result.workspace else None
    return jsonify(body)


@field_api_bp.route('/stops/active', methods=['GET'])
@agent_id_required
def active_stop():
    """Re-open the active stop, e.g. after the app was restarted"""
    ctx = request.field_ctx
    if ctx.route is None:
        sequencer.load_todays_route(ctx)
    if ctx.route is None:
        return jsonify({'error': 'No route planned for today'}), 404
    active = sequencer.get_active_stop(ctx.route)
    if active is None:
        return jsonify({'active_stop_idx': None, 'visit': None})
    workspace = sequencer.open_active_stop(ctx)
    return jsonify({
        'active_stop_idx': active.idx,
        'visit': workspace.to_dict() if workspace else None,
    })


@field_api_bp.route('/stops/<int:stop_idx>/skip', methods=['POST'])
@agent_id_required
def skip_stop(stop_idx):
    ctx = request.field_ctx
    sequencer.skip_stop(ctx, stop_idx, _payload().get('reason'))
    return _route_response(ctx)


@field_api_bp.route('/stops/<int:stop_idx>/complete', methods=['POST'])
@agent_id_required
def complete_stop(stop_idx):
    ctx = request.field_ctx
    sequencer.complete_non_visit_stop(ctx, stop_idx)
    return _route_response(ctx)


@field_api_bp.route('/stops/unplanned', methods=['POST'])
@agent_id_required
def add_unplanned_stop():
    ctx = request.field_ctx
    data = _payload()
    descriptor = {k: v for k, v in data.items()
                  if k in ('stop_type', 'customer', 'location_name', 'address', 'notes')}
    result = sequencer.add_unplanned_stop(ctx, descriptor, check_in_now=bool(data.get('check_in')),
                                          location_provider=request.location_provider)
    body = sequencer.describe_route(ctx.route, ctx.strict_sequence)
    if isinstance(result, sequencer.CheckInResult):
        body['visit'] = result.workspace.to_dict() if result.workspace else None
    return jsonify(body), 201


# --- visits ---

@field_api_bp.route('/visits/<visit_id>', methods=['GET'])
@agent_id_required
def get_visit(visit_id):
    ctx = request.field_ctx
    if request.args.get('refresh'):
        workspace = reconciliation.activate_visit(ctx, visit_id)
    else:
        workspace = reconciliation.get_workspace(ctx, visit_id)
    return jsonify(workspace.to_dict())


def _activity_response(ctx, visit_id, warnings):
    body = ctx.workspaces[visit_id].to_dict()
    body['warnings'] = warnings
    return jsonify(body)


@field_api_bp.route('/visits/<visit_id>/activities/<key>/complete', methods=['POST'])
@agent_id_required
def complete_activity(visit_id, key):
    ctx = request.field_ctx
    data = _payload()
    result = result_from_payload(key, data['result']) if data.get('result') is not None else None
    warnings = reconciliation.complete_activity(ctx, visit_id, key, result)
    return _activity_response(ctx, visit_id, warnings)


@field_api_bp.route('/visits/<visit_id>/activities/<key>/skip', methods=['POST'])
@agent_id_required
def skip_activity(visit_id, key):
    ctx = request.field_ctx
    warnings = reconciliation.skip_activity(ctx, visit_id, key)
    return _activity_response(ctx, visit_id, warnings)


@field_api_bp.route('/visits/<visit_id>/activities/<key>', methods=['PUT'])
@agent_id_required
def amend_activity(visit_id, key):
    ctx = request.field_ctx
    data = _payload()
    if not isinstance(data.get('result'), dict):
        raise FieldValidationError("Amended result data is required")
    warnings = reconciliation.amend_activity(ctx, visit_id, key, result_from_payload(key, data['result']))
    return _activity_response(ctx, visit_id, warnings)


@field_api_bp.route('/visits/<visit_id>/media', methods=['POST'])
@agent_id_required
def capture_media(visit_id):
    ctx = request.field_ctx
    items = _payload().get('media') or []
    media = [MediaRef.from_dict(item) for item in items if isinstance(item, dict)]
    reconciliation.capture_media(ctx, visit_id, media)
    return jsonify(ctx.workspaces[visit_id].to_dict()), 201


@field_api_bp.route('/visits/<visit_id>/finalize', methods=['POST'])
@agent_id_required
def finalize_visit(visit_id):
    """Always 200: the outcome (committed / blocked / retry_needed) is in the body"""
    ctx = request.field_ctx
    outcome = completion.finalize_visit(ctx, visit_id)
    body = outcome.to_dict()
    if outcome.route is not None:
        body['route'] = sequencer.describe_route(outcome.route, ctx.strict_sequence)
    return jsonify(body)


@field_api_bp.route('/visits/<visit_id>/skip', methods=['POST'])
@agent_id_required
def skip_visit(visit_id):
    ctx = request.field_ctx
    completion.skip_visit(ctx, visit_id, _payload().get('reason'))
    return _route_response(ctx)


# --- stock transfers ---

def _transfer_response(transfer):
    return jsonify(transfers.describe_transfer(transfer))


@field_api_bp.route('/transfers/<transfer_id>', methods=['GET'])
@agent_id_required
def get_transfer(transfer_id):
    return _transfer_response(transfers.load_transfer(request.field_ctx, transfer_id))


@field_api_bp.route('/transfers/<transfer_id>/start-loading', methods=['POST'])
@agent_id_required
def start_loading(transfer_id):
    return _transfer_response(transfers.start_loading(request.field_ctx, transfer_id))


@field_api_bp.route('/transfers/<transfer_id>/items/<product>/check', methods=['POST'])
@agent_id_required
def record_item_check(transfer_id, product):
    data = _payload()
    transfer = transfers.record_item_check(
        request.field_ctx, transfer_id, product,
        verified_qty=data.get('verified_qty', 0),
        damaged_qty=data.get('damaged_qty', 0),
        missing_qty=data.get('missing_qty', 0),
        rejected=bool(data.get('rejected')),
    )
    return _transfer_response(transfer)


@field_api_bp.route('/transfers/<transfer_id>/verify-all', methods=['POST'])
@agent_id_required
def verify_all_items(transfer_id):
    return _transfer_response(transfers.verify_all_items(request.field_ctx, transfer_id))


@field_api_bp.route('/transfers/<transfer_id>/complete-loading', methods=['POST'])
@agent_id_required
def complete_loading(transfer_id):
    return _transfer_response(transfers.complete_loading(request.field_ctx, transfer_id))


@field_api_bp.route('/transfers/<transfer_id>/arrive', methods=['POST'])
@agent_id_required
def arrive_at_destination(transfer_id):
    return _transfer_response(transfers.arrive_at_destination(
        request.field_ctx, transfer_id, location_provider=request.location_provider))


@field_api_bp.route('/transfers/<transfer_id>/handoff', methods=['POST'])
@agent_id_required
def complete_handoff(transfer_id):
    data = _payload()
    photo = MediaRef.from_dict(data['photo']) if isinstance(data.get('photo'), dict) else None
    transfer = transfers.complete_handoff(
        request.field_ctx, transfer_id, data.get('received_by'), photo=photo, notes=data.get('notes')
    )
    return _transfer_response(transfer)


@field_api_bp.route('/transfers/<transfer_id>/return', methods=['POST'])
@agent_id_required
def return_transfer(transfer_id):
    return _transfer_response(transfers.return_transfer(request.field_ctx, transfer_id, _payload().get('reason')))
