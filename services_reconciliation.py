"""
Reconciliation service for visit progress.

Entering a visit merges two views of the same work:
- the local progress record (survives restarts, may hold facts the server has
  not received yet)
- the server visit and its photos (authoritative once a fact has synced)

Server-confirmed facts always win. Local-only facts are kept as provisional
progress so the agent can carry on while offline. Every local change is
written through to the progress record first; the server call that follows
may fail without undoing it.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from activity_gate import ActivitySequence, build_activity_plan
from field_entities import MediaRef, PhotoResult
from field_errors import FieldValidationError, FrmApiError, FrmNetworkError
from progress_store import ProgressSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergedProgress:
    completed: FrozenSet[str]
    skipped: FrozenSet[str]
    media: Tuple[MediaRef, ...]
    results: Dict[str, dict]
    provisional: FrozenSet[str]
    provisional_media: FrozenSet[str]


def merge_progress(plan, local=None, server_visit=None, server_media=None):
    """
    Merge a local progress snapshot with server state. Server wins.

    Args:
        plan: ordered ActivitySpec list for the visit
        local: ProgressSnapshot or None
        server_visit: Visit or None when the server could not be reached
        server_media: list of MediaRef or None when the server could not be reached

    Returns:
        MergedProgress; `provisional` lists activity keys known only locally
    """
    local_completed = set(local.completed) if local else set()
    local_skipped = set(local.skipped) if local else set()
    local_results = dict(local.results) if local else {}

    server_status = {}
    server_results = {}
    if server_visit is not None:
        for activity in server_visit.activities:
            if activity.status in ('completed', 'skipped'):
                server_status[activity.key] = activity.status
            if activity.result:
                server_results[activity.key] = activity.result

    completed, skipped, provisional = set(), set(), set()
    results = {}
    for spec in plan:
        key = spec.key
        remote = server_status.get(key)
        if remote == 'completed':
            completed.add(key)
        elif remote == 'skipped':
            skipped.add(key)
        elif key in local_completed:
            completed.add(key)
            provisional.add(key)
        elif key in local_skipped:
            skipped.add(key)
            provisional.add(key)

        if key in server_results:
            results[key] = server_results[key]
        elif key in local_results:
            results[key] = local_results[key]

    local_media = tuple(local.media) if local else ()
    if server_media:
        # A non-empty server list replaces local media entirely
        media = tuple(server_media)
        provisional_media = frozenset()
        server_urls = {m.url for m in media}
        dropped = [m for m in local_media if m.url not in server_urls]
        if dropped:
            logger.info(f"Server media replaces {len(dropped)} local-only media references")
    else:
        media = local_media
        provisional_media = frozenset(m.id for m in local_media)

    return MergedProgress(
        completed=frozenset(completed),
        skipped=frozenset(skipped),
        media=media,
        results=results,
        provisional=frozenset(provisional),
        provisional_media=provisional_media,
    )


@dataclass
class VisitWorkspace:
    """Everything the agent sees and edits while a visit is open"""
    visit_id: str
    sequence: ActivitySequence
    visit: Optional[object] = None
    media: Tuple[MediaRef, ...] = ()
    results: Dict[str, dict] = field(default_factory=dict)
    provisional: Set[str] = field(default_factory=set)
    provisional_media: Set[str] = field(default_factory=set)
    warnings: List[str] = field(default_factory=list)
    server_available: bool = True
    has_local_record: bool = False

    @property
    def read_only(self):
        return self.sequence.read_only

    def has_progress(self):
        """Completed or skipped activities, or captured media"""
        return self.sequence.has_progress() or bool(self.media)

    def snapshot(self):
        return ProgressSnapshot(
            unit_id=self.visit_id,
            unit_kind='visit',
            completed=self.sequence.completed,
            skipped=self.sequence.skipped,
            media=self.media,
            results=dict(self.results),
        )

    def to_dict(self):
        current = self.sequence.current
        return {
            'visit_id': self.visit_id,
            'visit_status': self.visit.status if self.visit is not None else None,
            'read_only': self.read_only,
            'current_activity': current.key if current and not self.read_only else None,
            'activities': self.sequence.to_list(),
            'pending_mandatory': [a.key for a in self.sequence.pending_mandatory()],
            'media': [m.to_dict() for m in self.media],
            'results': dict(self.results),
            'provisional': sorted(self.provisional),
            'provisional_media': sorted(self.provisional_media),
            'has_progress': self.has_progress(),
            'server_available': self.server_available,
            'warnings': list(self.warnings),
        }


def activate_visit(ctx, visit_id, read_only=None):
    """
    Open a visit: load local progress, fetch server state and merge them.

    A server failure is not an error here: the workspace falls back to the
    local record alone and carries a warning.
    """
    local = ctx.store.load(visit_id)
    warnings = []
    visit, server_media = None, None
    try:
        visit = ctx.backend.get_visit(visit_id)
        server_media = ctx.backend.get_visit_media(visit_id)
    except (FrmNetworkError, FrmApiError) as e:
        logger.warning(f"Could not load server progress for visit {visit_id}: {str(e)}")
        warnings.append("Server progress could not be loaded; showing progress saved on this device")

    plan = build_activity_plan(visit)
    merged = merge_progress(plan, local, visit, server_media)

    if read_only is None:
        stop = ctx.route.stop_for_visit(visit_id) if ctx.route is not None else None
        read_only = (visit is not None and visit.is_terminal) or (stop is not None and stop.is_terminal)

    sequence = ActivitySequence(plan, merged.completed, merged.skipped, read_only=read_only)
    workspace = VisitWorkspace(
        visit_id=visit_id,
        sequence=sequence,
        visit=visit,
        media=merged.media,
        results=dict(merged.results),
        provisional=set(merged.provisional),
        provisional_media=set(merged.provisional_media),
        warnings=warnings,
        server_available=visit is not None,
        has_local_record=local is not None,
    )

    if not read_only and (visit is not None or local is not None):
        # Local record now reflects the merged view; read-only visits keep no record
        ctx.store.save(workspace.snapshot())
    if ctx.store.degraded:
        workspace.warnings.append("Progress cannot be saved on this device; work is kept on the server only")

    ctx.workspaces[visit_id] = workspace
    logger.info(f"Activated visit {visit_id}: completed={sorted(merged.completed)}, "
                f"skipped={sorted(merged.skipped)}, provisional={sorted(merged.provisional)}, read_only={read_only}")
    return workspace


def get_workspace(ctx, visit_id):
    workspace = ctx.workspaces.get(visit_id)
    if workspace is None:
        workspace = activate_visit(ctx, visit_id)
    return workspace


def _result_payload(result):
    if result is None:
        return {}
    if hasattr(result, 'to_payload'):
        return result.to_payload()
    return dict(result)


def _report(ctx, workspace, spec, payload, status=None):
    """Send an activity transition to the server; failures become warnings"""
    try:
        ctx.backend.mark_activity_completed(
            workspace.visit_id, spec.activity_type, spec.activity_name,
            status=status, result_data=payload,
        )
    except (FrmNetworkError, FrmApiError) as e:
        logger.warning(f"Activity {spec.key} for visit {workspace.visit_id} saved locally, server sync failed: {str(e)}")
        return f"{spec.activity_name} saved on this device but not yet synced: {str(e)}"
    workspace.provisional.discard(spec.key)
    return None


def complete_activity(ctx, visit_id, key, result=None):
    """
    Complete the current activity.

    Returns:
        list of non-blocking warnings (empty when the server accepted it)

    Raises:
        ActivityTransitionError: the gate does not allow completing `key`
    """
    workspace = get_workspace(ctx, visit_id)
    workspace.sequence.check_transition(key, 'complete')

    if result is None and key == 'photos':
        result = PhotoResult(media=workspace.media)
    payload = _result_payload(result)

    with ctx.mutation(visit_id):
        spec = workspace.sequence.complete(key)
        workspace.results[key] = payload
        workspace.provisional.add(key)
        ctx.store.mark_completed(visit_id, key, payload)

        warning = _report(ctx, workspace, spec, payload)
        ctx.store.log_event(visit_id, 'activity_completed', {'activity': key, 'synced': warning is None})

    return [warning] if warning else []


def skip_activity(ctx, visit_id, key):
    """Skip the current non-mandatory activity. Returns warnings."""
    workspace = get_workspace(ctx, visit_id)
    workspace.sequence.check_transition(key, 'skip')

    with ctx.mutation(visit_id):
        spec = workspace.sequence.skip(key)
        workspace.provisional.add(key)
        ctx.store.mark_skipped(visit_id, key)

        warning = _report(ctx, workspace, spec, {'skipped': True}, status='skipped')
        ctx.store.log_event(visit_id, 'activity_skipped', {'activity': key, 'synced': warning is None})

    return [warning] if warning else []


def amend_activity(ctx, visit_id, key, result):
    """
    Overwrite the captured data of a completed activity.

    Later activities keep their state: an amendment does not re-lock or
    re-validate anything downstream.
    """
    workspace = get_workspace(ctx, visit_id)
    spec = workspace.sequence.amend(key)
    payload = _result_payload(result)

    with ctx.mutation(visit_id):
        workspace.results[key] = payload
        ctx.store.set_result(visit_id, key, payload)

        warning = _report(ctx, workspace, spec, payload)
        ctx.store.log_event(visit_id, 'activity_amended', {'activity': key, 'synced': warning is None})

    return [warning] if warning else []


def capture_media(ctx, visit_id, media_refs):
    """Record captured photos for an open visit"""
    workspace = get_workspace(ctx, visit_id)
    if workspace.read_only:
        raise FieldValidationError("Visit is closed, no more photos can be added")
    media_refs = [m if isinstance(m, MediaRef) else MediaRef.from_dict(m) for m in media_refs]
    if not media_refs:
        raise FieldValidationError("No media to capture")

    with ctx.mutation(visit_id):
        known = {m.id for m in workspace.media}
        added = tuple(m for m in media_refs if m.id not in known)
        workspace.media = workspace.media + added
        workspace.provisional_media.update(m.id for m in added)
        ctx.store.add_media(visit_id, media_refs)
        ctx.store.log_event(visit_id, 'media_captured', {'count': len(media_refs)})

    return workspace.media
