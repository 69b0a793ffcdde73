"""
Stock transfer sequencing.

pending -> loading -> in_transit -> arrived -> completed, with "returned" as an
irreversible side exit from loading, in_transit or arrived.

Each step checks its precondition first, calls the backend, then re-fetches
the transfer: deliveries linked to the transfer derive their readiness from it.
"""
import hashlib
import logging
from dataclasses import replace

from field_entities import MediaRef
from field_errors import TransferTransitionError, FieldValidationError
from field_status_constants import (
    RETURNABLE_TRANSFER_STATUSES, can_transition_to, get_allowed_transitions, get_status_label
)
from progress_store import empty_snapshot

logger = logging.getLogger(__name__)

ACTION_START_LOADING = 'start_loading'
ACTION_RECORD_ITEM_CHECK = 'record_item_check'
ACTION_VERIFY_ALL = 'verify_all_items'
ACTION_COMPLETE_LOADING = 'complete_loading'
ACTION_ARRIVE = 'arrive'
ACTION_COMPLETE_HANDOFF = 'complete_handoff'
ACTION_RETURN = 'return'

# Progress record step keys
STEP_LOADED = 'loading_completed'
STEP_ARRIVED = 'arrived'
STEP_PHOTO = 'handoff_photo'


def derive_check_status(expected_qty, verified_qty, damaged_qty, missing_qty):
    """
    Check status for one item from the counted quantities.

    Nothing counted is pending, less than expected is partial. Once the full
    quantity is accounted for, any damage makes it damaged, else any shortage
    makes it missing, else it is verified.
    """
    accounted = verified_qty + damaged_qty + missing_qty
    if accounted <= 0:
        return 'pending'
    if accounted < expected_qty:
        return 'partial'
    if damaged_qty > 0:
        return 'damaged'
    if missing_qty > 0:
        return 'missing'
    return 'verified'


def unchecked_items(transfer):
    return [item for item in transfer.items if not item.is_checked]


def loading_progress(transfer):
    total = len(transfer.items)
    checked = total - len(unchecked_items(transfer))
    return {
        'total_items': total,
        'checked_items': checked,
        'unchecked_products': [item.product for item in unchecked_items(transfer)],
        'percentage': round(checked * 100.0 / total, 1) if total else 100.0,
        'expected_qty': sum(item.expected_qty for item in transfer.items),
        'verified_qty': sum(item.verified_qty for item in transfer.items),
        'damaged_qty': sum(item.damaged_qty for item in transfer.items),
        'missing_qty': sum(item.missing_qty for item in transfer.items),
    }


def delivery_readiness(transfer):
    """Deliveries fed by this transfer become ready once it is completed"""
    ready = transfer.status == 'completed'
    return [
        {
            'delivery_order': link.delivery_order,
            'customer_name': link.customer_name,
            'item_count': link.item_count,
            'delivery_status': link.delivery_status,
            'ready': ready or link.delivery_status in ('ready', 'dispatched'),
        }
        for link in transfer.deliveries
    ]


def allowed_transfer_actions(transfer):
    """Actions the agent can take on the transfer right now"""
    status = transfer.status
    actions = []
    if status == 'pending':
        actions.append(ACTION_START_LOADING)
    elif status == 'loading':
        actions.extend([ACTION_RECORD_ITEM_CHECK, ACTION_VERIFY_ALL])
        if not unchecked_items(transfer):
            actions.append(ACTION_COMPLETE_LOADING)
    elif status == 'in_transit':
        actions.append(ACTION_ARRIVE)
    elif status == 'arrived':
        actions.append(ACTION_COMPLETE_HANDOFF)
    if status in RETURNABLE_TRANSFER_STATUSES:
        actions.append(ACTION_RETURN)
    return actions


def describe_transfer(transfer):
    return {
        'transfer_id': transfer.id,
        'transfer_type': transfer.transfer_type,
        'status': transfer.status,
        'status_label': get_status_label('transfer', transfer.status),
        'source_warehouse': transfer.source_warehouse,
        'dest_warehouse': transfer.dest_warehouse,
        'received_by': transfer.received_by,
        'handoff_photo': transfer.handoff_photo,
        'items': [
            {
                'product': item.product,
                'product_name': item.product_name,
                'expected_qty': item.expected_qty,
                'accounted_qty': item.accounted_qty,
                'verified_qty': item.verified_qty,
                'damaged_qty': item.damaged_qty,
                'missing_qty': item.missing_qty,
                'check_status': item.check_status,
            }
            for item in transfer.items
        ],
        'loading_progress': loading_progress(transfer),
        'deliveries': delivery_readiness(transfer),
        'allowed_actions': allowed_transfer_actions(transfer),
        'next_statuses': get_allowed_transitions('transfer', transfer.status),
    }


# --- operations ---

def load_transfer(ctx, transfer_id):
    transfer = ctx.backend.get_transfer(transfer_id)
    ctx.transfers[transfer_id] = transfer
    return transfer


def _current(ctx, transfer_id):
    transfer = ctx.transfers.get(transfer_id)
    return transfer if transfer is not None else load_transfer(ctx, transfer_id)


def _require_step(transfer, to_status):
    if not can_transition_to('transfer', transfer.status, to_status):
        raise TransferTransitionError(
            f"Cannot move transfer {transfer.id} from {get_status_label('transfer', transfer.status)} "
            f"to {get_status_label('transfer', to_status)}"
        )


def _finish(ctx, transfer_id, event_type, payload=None):
    """Re-fetch after a mutation and journal it"""
    transfer = load_transfer(ctx, transfer_id)
    ctx.store.log_event(transfer_id, event_type, payload)
    if transfer.is_terminal:
        ctx.store.purge(transfer_id)
    logger.info(f"Transfer {transfer_id} {event_type}, now {transfer.status}")
    return transfer


def start_loading(ctx, transfer_id):
    transfer = _current(ctx, transfer_id)
    _require_step(transfer, 'loading')
    with ctx.mutation(transfer_id):
        ctx.backend.start_loading_check(transfer_id)
        return _finish(ctx, transfer_id, 'loading_started')


def record_item_check(ctx, transfer_id, product, verified_qty=0, damaged_qty=0, missing_qty=0, rejected=False):
    """
    Record the counted quantities for one item during loading.

    Raises:
        FieldValidationError: negative quantities or more than expected accounted for
    """
    transfer = _current(ctx, transfer_id)
    if transfer.status != 'loading':
        raise TransferTransitionError("Items can only be checked while loading")
    item = transfer.item(product)
    if item is None:
        raise FieldValidationError(f"Product {product} is not part of transfer {transfer_id}")

    try:
        verified_qty, damaged_qty, missing_qty = float(verified_qty), float(damaged_qty), float(missing_qty)
    except (TypeError, ValueError):
        raise FieldValidationError("Quantities must be numbers")
    if min(verified_qty, damaged_qty, missing_qty) < 0:
        raise FieldValidationError("Quantities cannot be negative")
    if verified_qty + damaged_qty + missing_qty > item.expected_qty:
        raise FieldValidationError(
            f"{item.product_name or product}: {verified_qty + damaged_qty + missing_qty:g} accounted for, "
            f"only {item.expected_qty:g} expected"
        )

    check_status = 'rejected' if rejected else derive_check_status(
        item.expected_qty, verified_qty, damaged_qty, missing_qty
    )
    with ctx.mutation(transfer_id):
        ctx.backend.update_item_check(transfer_id, product, verified_qty, damaged_qty, missing_qty, check_status)
        return _finish(ctx, transfer_id, 'item_checked', {'product': product, 'check_status': check_status})


def verify_all_items(ctx, transfer_id):
    transfer = _current(ctx, transfer_id)
    if transfer.status != 'loading':
        raise TransferTransitionError("Items can only be verified while loading")
    with ctx.mutation(transfer_id):
        ctx.backend.verify_all_items(transfer_id)
        return _finish(ctx, transfer_id, 'all_items_verified')


def complete_loading(ctx, transfer_id):
    """
    Finish loading and leave for the destination.

    Raises:
        TransferTransitionError: an item check is still pending or partial
    """
    transfer = _current(ctx, transfer_id)
    _require_step(transfer, 'in_transit')
    pending = unchecked_items(transfer)
    if pending:
        raise TransferTransitionError(
            f"{len(pending)} item(s) still to be checked",
            reasons=[f"{item.product_name or item.product} is {item.check_status}" for item in pending]
        )
    with ctx.mutation(transfer_id):
        ctx.backend.complete_loading(transfer_id)
        ctx.store.mark_completed(transfer_id, STEP_LOADED, unit_kind='transfer')
        return _finish(ctx, transfer_id, 'loading_completed')


def arrive_at_destination(ctx, transfer_id, location_provider=None):
    transfer = _current(ctx, transfer_id)
    _require_step(transfer, 'arrived')
    with ctx.mutation(transfer_id):
        location = ctx.capture_location(location_provider)
        ctx.backend.arrive_at_destination(transfer_id, location.latitude, location.longitude)
        ctx.store.mark_completed(transfer_id, STEP_ARRIVED, unit_kind='transfer')
        return _finish(ctx, transfer_id, 'arrived', {'location_known': location.known})


def _photo_key(photo):
    """Identity of a handoff photo: media id, or a digest of the file to upload"""
    if isinstance(photo, MediaRef):
        return f"media:{photo.id}"
    file_name, content = photo
    return f"file:{file_name}:{hashlib.sha256(content).hexdigest()}"


def _handoff_photo(ctx, transfer_id, photo):
    """
    Resolve the handoff photo to an uploaded media reference.

    A photo uploaded by an earlier, failed handoff attempt is reused when the
    retry passes no photo or the same one.
    """
    cached = ctx.store.load(transfer_id)
    cached_media = cached.media[0] if cached is not None and cached.media else None
    if photo is None:
        return cached_media

    photo_key = _photo_key(photo)
    if cached_media is not None and cached.results.get(STEP_PHOTO, {}).get('key') == photo_key:
        return cached_media

    if isinstance(photo, MediaRef):
        media = photo
    else:
        file_name, content = photo
        media = ctx.backend.upload_media(file_name, content, doctype='Stock Transfer',
                                         docname=transfer_id, fieldname='handoff_photo')
    snapshot = cached or empty_snapshot(transfer_id, 'transfer')
    ctx.store.save(replace(snapshot, media=(media,)).with_result(STEP_PHOTO, {'key': photo_key}))
    return media


def complete_handoff(ctx, transfer_id, received_by, photo=None, notes=None):
    """
    Hand the goods over at the destination.

    Args:
        received_by: name of the person receiving the goods (required)
        photo: optional MediaRef, or (file_name, content) to upload first
        notes: optional handoff notes
    """
    received_by = (received_by or '').strip()
    if not received_by:
        raise FieldValidationError("Receiver name is required")
    transfer = _current(ctx, transfer_id)
    _require_step(transfer, 'completed')

    with ctx.mutation(transfer_id):
        media = _handoff_photo(ctx, transfer_id, photo)
        ctx.backend.complete_handoff(transfer_id, received_by, photo=media, notes=notes)
        return _finish(ctx, transfer_id, 'handoff_completed', {'received_by': received_by})


def return_transfer(ctx, transfer_id, reason):
    reason = (reason or '').strip()
    if not reason:
        raise FieldValidationError("A reason is required to return a transfer")
    transfer = _current(ctx, transfer_id)
    if transfer.status not in RETURNABLE_TRANSFER_STATUSES:
        raise TransferTransitionError(
            f"Transfer cannot be returned from {get_status_label('transfer', transfer.status)}"
        )
    with ctx.mutation(transfer_id):
        ctx.backend.return_transfer(transfer_id, reason)
        return _finish(ctx, transfer_id, 'returned', {'reason': reason})
