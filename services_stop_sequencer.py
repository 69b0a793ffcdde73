"""
Stop sequencing for a field agent's route.

Stops are classified from the server route alone:
- route not in progress: every stop is locked
- a stop is arrived/in progress: it is the active stop, every other stop is locked
- otherwise: every stop that is not completed or skipped is eligible for check-in

Agents may visit stops out of order. In strict sequence mode only the first
pending stop (or an unplanned stop) is eligible.

The route is re-fetched after every mutating call; nothing here edits it locally.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from field_errors import FieldValidationError
from field_status_constants import can_transition_to, get_status_label
from services_reconciliation import activate_visit
from timezone_utils import format_server_datetime, get_agent_today

logger = logging.getLogger(__name__)

STOP_LOCKED = 'locked'
STOP_ELIGIBLE = 'eligible'
STOP_ACTIVE = 'active'

# Stop kinds completed through their own workflow rather than complete_non_visit_stop
VISIT_STOP_KIND = 'visit'


@dataclass
class CheckInResult:
    route: object
    stop: object
    location: object
    workspace: Optional[object] = None


def get_active_stop(route):
    """
    The stop currently being worked on, or None.

    The server should never report two active stops; if it does, the one
    earliest in the sequence is treated as active.
    """
    if route is None or route.status != 'in_progress':
        return None
    active = [s for s in route.stops if s.is_active]
    if not active:
        return None
    if len(active) > 1:
        logger.warning(f"Route {route.id} reports {len(active)} active stops "
                       f"({[s.sequence for s in active]}), using the lowest sequence")
    return min(active, key=lambda s: s.sequence)


def compute_stop_states(route, strict_sequence=False):
    """
    Classify every stop of a route.

    Returns:
        dict: stop idx -> STOP_LOCKED / STOP_ELIGIBLE / STOP_ACTIVE
    """
    states = {stop.idx: STOP_LOCKED for stop in route.stops}
    if route.status != 'in_progress':
        return states

    active = get_active_stop(route)
    if active is not None:
        states[active.idx] = STOP_ACTIVE
        return states

    open_stops = [s for s in route.stops if not s.is_terminal]
    if strict_sequence:
        first_planned = next((s for s in open_stops if not s.is_unplanned), None)
        eligible = [s for s in open_stops if s.is_unplanned or s is first_planned]
    else:
        eligible = open_stops
    for stop in eligible:
        states[stop.idx] = STOP_ELIGIBLE
    return states


def route_progress(route):
    total = len(route.stops)
    completed = sum(1 for s in route.stops if s.status == 'completed')
    skipped = sum(1 for s in route.stops if s.status == 'skipped')
    done = completed + skipped
    return {
        'total': total,
        'completed': completed,
        'skipped': skipped,
        'remaining': total - done,
        'percentage': round(done * 100.0 / total, 1) if total else 0.0,
    }


def describe_route(route, strict_sequence=False):
    """Route with per-stop state, as returned to the UI"""
    states = compute_stop_states(route, strict_sequence)
    active = get_active_stop(route)
    return {
        'route_id': route.id,
        'route_date': route.route_date,
        'start_time': format_server_datetime(route.start_time),
        'end_time': format_server_datetime(route.end_time),
        'status': route.status,
        'status_label': get_status_label('route', route.status),
        'active_stop_idx': active.idx if active else None,
        'progress': route_progress(route),
        'stops': [
            {
                'idx': s.idx,
                'sequence': s.sequence,
                'kind': s.kind,
                'status': s.status,
                'name': s.name,
                'customer': s.customer,
                'visit_id': s.visit_id,
                'transfer_id': s.transfer_id,
                'is_unplanned': s.is_unplanned,
                'skip_reason': s.skip_reason,
                'state': states.get(s.idx, STOP_LOCKED),
            }
            for s in route.stops
        ],
    }


# --- route lifecycle ---

def _require_route(ctx):
    if ctx.route is None:
        raise FieldValidationError("No route loaded for this agent")
    return ctx.route


def _require_stop(route, stop_idx):
    stop = route.stop_by_idx(stop_idx)
    if stop is None:
        raise FieldValidationError(f"Stop {stop_idx} is not on route {route.id}")
    return stop


def load_todays_route(ctx):
    """Fetch the agent's route for today; None when nothing is planned"""
    ctx.route = ctx.backend.get_todays_route()
    if ctx.route is None:
        logger.info(f"No route planned today for agent {ctx.agent_id}")
    elif ctx.route.route_date and str(ctx.route.route_date)[:10] != get_agent_today().isoformat():
        # The backend decides which route is today's; a date mismatch is only logged
        logger.warning(f"Route {ctx.route.id} is dated {ctx.route.route_date}, "
                       f"agent {ctx.agent_id} local day is {get_agent_today()}")
    return ctx.route


def refresh_route(ctx):
    route = _require_route(ctx)
    ctx.route = ctx.backend.get_route(route.id)
    return ctx.route


def start_route(ctx, location_provider=None):
    route = _require_route(ctx)
    if route.status == 'in_progress':
        return route
    if not can_transition_to('route', route.status, 'in_progress'):
        raise FieldValidationError(f"Cannot start route from status: {get_status_label('route', route.status)}")

    with ctx.mutation(route.id):
        location = ctx.capture_location(location_provider)
        ctx.route = ctx.backend.start_route(route.id, location.latitude, location.longitude)
        ctx.store.log_event(route.id, 'route_started', {'location_known': location.known})

    logger.info(f"Agent {ctx.agent_id} started route {route.id}")
    return ctx.route


def end_route(ctx, location_provider=None):
    route = _require_route(ctx)
    if route.status != 'in_progress':
        raise FieldValidationError(f"Cannot end route from status: {get_status_label('route', route.status)}")
    active = get_active_stop(route)
    if active is not None:
        raise FieldValidationError(f"Stop {active.sequence} is still in progress, finish or skip it first")

    with ctx.mutation(route.id):
        location = ctx.capture_location(location_provider)
        ctx.route = ctx.backend.end_route(route.id, location.latitude, location.longitude)
        ctx.store.log_event(route.id, 'route_ended', route_progress(ctx.route))

    logger.info(f"Agent {ctx.agent_id} ended route {route.id}")
    return ctx.route


# --- stops ---

def check_in(ctx, stop_idx, location_provider=None):
    """
    Check into an eligible stop.

    Location is captured best effort; an unknown reading is sent as 0/0.
    For visit stops any stale local progress for the visit is cleared before
    the visit is opened.

    Returns:
        CheckInResult
    """
    route = _require_route(ctx)
    stop = _require_stop(route, stop_idx)
    state = compute_stop_states(route, ctx.strict_sequence).get(stop.idx)
    if state != STOP_ELIGIBLE:
        if route.status != 'in_progress':
            reason = "Start the route before checking in"
        elif state == STOP_ACTIVE:
            reason = f"Already checked in at stop {stop.sequence}"
        elif stop.is_terminal:
            reason = f"Stop {stop.sequence} is already {stop.status}"
        elif get_active_stop(route) is not None:
            reason = f"Finish stop {get_active_stop(route).sequence} before checking in elsewhere"
        else:
            reason = f"Stop {stop.sequence} is not next in sequence"
        raise FieldValidationError(reason)

    with ctx.mutation(route.id):
        location = ctx.capture_location(location_provider)
        ctx.route = ctx.backend.arrive_at_stop(route.id, stop.idx, location.latitude, location.longitude)

    arrived = ctx.route.stop_by_idx(stop.idx) or stop
    workspace = None
    if arrived.kind == VISIT_STOP_KIND and arrived.visit_id:
        ctx.store.purge(arrived.visit_id)
        ctx.workspaces.pop(arrived.visit_id, None)
        workspace = activate_visit(ctx, arrived.visit_id)
    elif arrived.transfer_id:
        ctx.store.purge(arrived.transfer_id)

    ctx.store.log_event(arrived.visit_id or route.id, 'check_in', {
        'route': route.id,
        'stop_idx': stop.idx,
        'latitude': location.latitude,
        'longitude': location.longitude,
        'location_known': location.known,
    })
    logger.info(f"Agent {ctx.agent_id} checked in at stop {arrived.sequence} of route {route.id} "
                f"(location {'known' if location.known else 'unknown'})")
    return CheckInResult(route=ctx.route, stop=arrived, location=location, workspace=workspace)


def open_active_stop(ctx):
    """Re-enter the active stop (e.g. after a restart) without resetting its progress"""
    route = _require_route(ctx)
    active = get_active_stop(route)
    if active is None:
        return None
    if active.kind == VISIT_STOP_KIND and active.visit_id:
        return ctx.workspaces.get(active.visit_id) or activate_visit(ctx, active.visit_id)
    return None


def skip_stop(ctx, stop_idx, reason):
    """
    Skip an eligible or active stop with a reason.

    An active visit stop is skipped through the visit, so that partial work
    is never silently discarded.
    """
    reason = (reason or '').strip()
    if not reason:
        raise FieldValidationError("A reason is required to skip a stop")
    route = _require_route(ctx)
    stop = _require_stop(route, stop_idx)
    state = compute_stop_states(route, ctx.strict_sequence).get(stop.idx)
    if state == STOP_LOCKED:
        raise FieldValidationError(f"Stop {stop.sequence} cannot be skipped now")

    if state == STOP_ACTIVE and stop.kind == VISIT_STOP_KIND and stop.visit_id:
        from services_visit_completion import skip_visit
        return skip_visit(ctx, stop.visit_id, reason)

    with ctx.mutation(route.id):
        ctx.route = ctx.backend.skip_stop(route.id, stop.idx, reason)
        ctx.store.log_event(route.id, 'stop_skipped', {'stop_idx': stop.idx, 'reason': reason})

    logger.info(f"Agent {ctx.agent_id} skipped stop {stop.sequence} of route {route.id}: {reason}")
    return ctx.route


def add_unplanned_stop(ctx, stop_descriptor, check_in_now=False, location_provider=None):
    """
    Append an unplanned stop to the end of the route.

    Args:
        stop_descriptor: dict with at least 'stop_type' and a 'customer' or 'location_name'
        check_in_now: check into the new stop straight away

    Returns:
        Route, or CheckInResult when check_in_now is set
    """
    route = _require_route(ctx)
    if route.status not in ('not_started', 'in_progress'):
        raise FieldValidationError(f"Cannot add stops to a {get_status_label('route', route.status)} route")
    descriptor = dict(stop_descriptor or {})
    if not descriptor.get('stop_type'):
        raise FieldValidationError("Stop type is required")
    if not (descriptor.get('customer') or descriptor.get('location_name')):
        raise FieldValidationError("A customer or location is required for an unplanned stop")

    known = {s.idx for s in route.stops}
    with ctx.mutation(route.id):
        ctx.route = ctx.backend.add_unplanned_stop(route.id, descriptor)
        ctx.store.log_event(route.id, 'unplanned_stop_added', descriptor)

    added = [s for s in ctx.route.stops if s.idx not in known]
    new_stop = max(added, key=lambda s: s.sequence) if added else None
    if check_in_now:
        if new_stop is None:
            raise FieldValidationError("The new stop could not be found on the route")
        return check_in(ctx, new_stop.idx, location_provider=location_provider)
    return ctx.route


def complete_non_visit_stop(ctx, stop_idx):
    """
    Complete the active stop when it is not a sales visit.

    Visit stops are completed only by finalizing the visit. Transfer stops
    require the transfer to be finished first.
    """
    route = _require_route(ctx)
    stop = _require_stop(route, stop_idx)
    active = get_active_stop(route)
    if active is None or active.idx != stop.idx:
        raise FieldValidationError(f"Stop {stop.sequence} is not the active stop")
    if stop.kind == VISIT_STOP_KIND:
        raise FieldValidationError("Visit stops are completed by finishing the visit")
    if stop.kind == 'transfer' and stop.transfer_id:
        transfer = ctx.backend.get_transfer(stop.transfer_id)
        ctx.transfers[transfer.id] = transfer
        if transfer.status not in ('completed', 'returned'):
            raise FieldValidationError(f"Transfer {transfer.id} is still {transfer.status}")

    with ctx.mutation(route.id):
        ctx.route = ctx.backend.complete_stop(route.id, stop.idx)
        ctx.store.log_event(route.id, 'stop_completed', {'stop_idx': stop.idx, 'kind': stop.kind})

    return ctx.route
