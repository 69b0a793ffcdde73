"""
Visit completion: the only path to a visit's terminal state.

finalize_visit() never raises. Every call ends in one of three outcomes:
- committed: the server completed the visit, local progress was purged and
  the parent stop completed
- blocked: nothing was committed; reasons are shown to the agent verbatim
- retry_needed: the call did not get through; nothing local was changed
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from field_errors import (
    FieldValidationError, FrmApiError, FrmNetworkError, OperationInProgressError
)
from services_reconciliation import get_workspace
from services_stop_sequencer import refresh_route

logger = logging.getLogger(__name__)

COMMITTED = 'committed'
BLOCKED = 'blocked'
RETRY_NEEDED = 'retry_needed'

GENERIC_FAILURE_NOTICE = "The visit could not be completed. Please try again or contact support."


@dataclass
class FinalizeOutcome:
    status: str
    reasons: List[str] = field(default_factory=list)
    route: Optional[object] = None

    @property
    def committed(self):
        return self.status == COMMITTED

    def to_dict(self):
        return {'outcome': self.status, 'reasons': list(self.reasons)}


def _complete_parent_stop(ctx, visit_id):
    """Complete the stop linked to the visit unless the server already did"""
    if ctx.route is None:
        logger.warning(f"No route loaded, parent stop of visit {visit_id} not completed")
        return None
    route = refresh_route(ctx)
    stop = route.stop_for_visit(visit_id)
    if stop is None:
        logger.warning(f"Visit {visit_id} is not linked to a stop on route {route.id}")
        return route
    if stop.status != 'completed':
        ctx.backend.complete_stop(route.id, stop.idx)
        route = refresh_route(ctx)
    return route


def _finalize(ctx, visit_id):
    workspace = get_workspace(ctx, visit_id)
    if not workspace.server_available and not workspace.has_local_record:
        # Nothing to judge the visit by until the server answers
        logger.warning(f"Finalize of visit {visit_id} deferred, no server state and no local progress")
        ctx.workspaces.pop(visit_id, None)
        return FinalizeOutcome(RETRY_NEEDED, ["Could not reach the server, please retry"])

    already_completed = workspace.visit is not None and workspace.visit.status == 'completed'
    if not already_completed:
        pending = workspace.sequence.pending_mandatory()
        if pending:
            reasons = [f"{a.activity_name} is mandatory and has not been completed" for a in pending]
            logger.info(f"Finalize of visit {visit_id} blocked locally: {[a.key for a in pending]}")
            return FinalizeOutcome(BLOCKED, reasons)

    with ctx.mutation(visit_id):
        if already_completed:
            logger.info(f"Visit {visit_id} already completed on the server, finishing local cleanup")
        else:
            response = ctx.backend.finalize_visit(visit_id)
            if response.warnings:
                logger.warning(f"Finalize of visit {visit_id} returned sync warnings: {response.warnings}")
                ctx.store.log_event(visit_id, 'finalize_blocked', {'warnings': response.warnings})
                return FinalizeOutcome(BLOCKED, list(response.warnings))

        ctx.store.purge(visit_id)
        ctx.workspaces.pop(visit_id, None)
        ctx.store.log_event(visit_id, 'visit_completed')
        route = _complete_parent_stop(ctx, visit_id)

    logger.info(f"Visit {visit_id} committed by agent {ctx.agent_id}")
    return FinalizeOutcome(COMMITTED, route=route)


def finalize_visit(ctx, visit_id):
    """
    Commit a visit.

    Returns:
        FinalizeOutcome
    """
    try:
        return _finalize(ctx, visit_id)
    except FieldValidationError as e:
        return FinalizeOutcome(BLOCKED, e.reasons)
    except OperationInProgressError:
        return FinalizeOutcome(RETRY_NEEDED, ["The visit is still being saved, try again in a moment"])
    except FrmNetworkError as e:
        logger.warning(f"Finalize of visit {visit_id} did not reach the server: {str(e)}")
        return FinalizeOutcome(RETRY_NEEDED, ["Could not reach the server, please retry"])
    except FrmApiError as e:
        logger.warning(f"Finalize of visit {visit_id} rejected by the server: {e.message}")
        return FinalizeOutcome(BLOCKED, [e.message])
    except Exception as e:
        logger.error(f"Unexpected error finalizing visit {visit_id}: {str(e)}", exc_info=True)
        return FinalizeOutcome(BLOCKED, [GENERIC_FAILURE_NOTICE])


def skip_visit(ctx, visit_id, reason):
    """
    Abandon a visit that has no progress and skip its stop.

    Rejected once any activity was completed or skipped, or media captured.

    Returns:
        Route
    """
    reason = (reason or '').strip()
    if not reason:
        raise FieldValidationError("A reason is required to skip a visit")

    workspace = get_workspace(ctx, visit_id)
    if workspace.read_only:
        raise FieldValidationError("This visit is already closed")
    if workspace.has_progress():
        raise FieldValidationError(
            "Work has already been recorded for this visit",
            reasons=["Work has already been recorded for this visit, it cannot be skipped"]
        )

    if ctx.route is None:
        raise FieldValidationError("No route loaded for this agent")
    stop = ctx.route.stop_for_visit(visit_id)
    if stop is None:
        raise FieldValidationError(f"Visit {visit_id} is not on the current route")

    with ctx.mutation(visit_id):
        ctx.route = ctx.backend.skip_stop(ctx.route.id, stop.idx, reason)
        ctx.store.purge(visit_id)
        ctx.workspaces.pop(visit_id, None)
        ctx.store.log_event(visit_id, 'visit_skipped', {'reason': reason, 'stop_idx': stop.idx})

    logger.info(f"Agent {ctx.agent_id} skipped visit {visit_id}: {reason}")
    return ctx.route
