"""
Status Constants for Field Execution
Defines the route, stop, visit, activity and stock transfer lifecycles
"""

# Route Status Constants
ROUTE_STATUSES = {
    'not_started': {
        'value': 'not_started',
        'label': 'Not Started',
        'description': 'Route planned for the day, agent has not started it yet',
        'sort_order': 1
    },
    'in_progress': {
        'value': 'in_progress',
        'label': 'In Progress',
        'description': 'Agent is executing the route',
        'sort_order': 2
    },
    'paused': {
        'value': 'paused',
        'label': 'Paused',
        'description': 'Route execution temporarily halted',
        'sort_order': 3
    },
    'completed': {
        'value': 'completed',
        'label': 'Completed',
        'description': 'Agent ended the route',
        'sort_order': 4
    },
    'cancelled': {
        'value': 'cancelled',
        'label': 'Cancelled',
        'description': 'Route cancelled, no further work',
        'sort_order': 5
    }
}

ROUTE_TRANSITIONS = {
    'not_started': ['in_progress', 'cancelled'],
    'in_progress': ['completed', 'paused', 'cancelled'],
    'paused': ['in_progress', 'cancelled'],
    'completed': [],
    'cancelled': []
}

# Stop Status Constants
STOP_STATUSES = {
    'pending': {'value': 'pending', 'label': 'Pending', 'sort_order': 1},
    'arrived': {'value': 'arrived', 'label': 'Arrived', 'sort_order': 2},
    'in_progress': {'value': 'in_progress', 'label': 'In Progress', 'sort_order': 3},
    'partial': {'value': 'partial', 'label': 'Partial', 'sort_order': 4},
    'failed': {'value': 'failed', 'label': 'Failed', 'sort_order': 5},
    'completed': {'value': 'completed', 'label': 'Completed', 'sort_order': 6},
    'skipped': {'value': 'skipped', 'label': 'Skipped', 'sort_order': 7}
}

STOP_TRANSITIONS = {
    'pending': ['arrived', 'skipped'],
    'arrived': ['in_progress', 'completed', 'skipped', 'partial', 'failed'],
    'in_progress': ['completed', 'skipped', 'partial', 'failed'],
    'partial': ['arrived', 'completed', 'skipped'],
    'failed': ['arrived', 'skipped'],
    'completed': [],  # Immutable once completed
    'skipped': []     # Immutable once skipped
}

# Stop kinds as the backend labels them
STOP_KINDS = {
    'Sales Visit': 'visit',
    'Delivery': 'delivery',
    'Stock Transfer': 'transfer',
    'Pickup': 'pickup',
    'Break': 'break'
}

# Visit Status Constants
VISIT_STATUSES = {
    'planned': {'value': 'planned', 'label': 'Planned', 'sort_order': 1},
    'in_progress': {'value': 'in_progress', 'label': 'In Progress', 'sort_order': 2},
    'completed': {'value': 'completed', 'label': 'Completed', 'sort_order': 3},
    'cancelled': {'value': 'cancelled', 'label': 'Cancelled', 'sort_order': 4}
}

# Activity Status Constants
ACTIVITY_STATUSES = {
    'pending': {'value': 'pending', 'label': 'Pending', 'sort_order': 1},
    'completed': {'value': 'completed', 'label': 'Completed', 'sort_order': 2},
    'skipped': {'value': 'skipped', 'label': 'Skipped', 'sort_order': 3}
}

# Stock Transfer Status Constants
TRANSFER_STATUSES = {
    'pending': {
        'value': 'pending',
        'label': 'Pending',
        'description': 'Transfer scheduled, loading check not started',
        'sort_order': 1
    },
    'loading': {
        'value': 'loading',
        'label': 'Loading',
        'description': 'Driver is checking items onto the vehicle',
        'sort_order': 2
    },
    'in_transit': {
        'value': 'in_transit',
        'label': 'In Transit',
        'description': 'Loading complete, goods on the way to destination',
        'sort_order': 3
    },
    'arrived': {
        'value': 'arrived',
        'label': 'Arrived',
        'description': 'Vehicle at destination, awaiting handoff',
        'sort_order': 4
    },
    'completed': {
        'value': 'completed',
        'label': 'Completed',
        'description': 'Goods handed off to destination staff',
        'sort_order': 5
    },
    'returned': {
        'value': 'returned',
        'label': 'Returned',
        'description': 'Goods returned to source warehouse',
        'sort_order': 6
    },
    'cancelled': {
        'value': 'cancelled',
        'label': 'Cancelled',
        'description': 'Transfer cancelled in the back office',
        'sort_order': 7
    }
}

TRANSFER_TRANSITIONS = {
    'pending': ['loading'],
    'loading': ['in_transit', 'returned'],
    'in_transit': ['arrived', 'returned'],
    'arrived': ['completed', 'returned'],
    'completed': [],
    'returned': [],   # Irreversible
    'cancelled': []
}

# Transfer item check statuses
ITEM_CHECK_STATUSES = {
    'pending': {'value': 'pending', 'label': 'Pending', 'sort_order': 1},
    'partial': {'value': 'partial', 'label': 'Partially Checked', 'sort_order': 2},
    'verified': {'value': 'verified', 'label': 'Verified', 'sort_order': 3},
    'damaged': {'value': 'damaged', 'label': 'Damaged', 'sort_order': 4},
    'missing': {'value': 'missing', 'label': 'Missing', 'sort_order': 5},
    'rejected': {'value': 'rejected', 'label': 'Rejected', 'sort_order': 6}
}

# Status Groups
ACTIVE_STOP_STATUSES = {'arrived', 'in_progress'}
TERMINAL_STOP_STATUSES = {'completed', 'skipped'}
TERMINAL_VISIT_STATUSES = {'completed', 'cancelled'}
TERMINAL_TRANSFER_STATUSES = {'completed', 'returned', 'cancelled'}
RETURNABLE_TRANSFER_STATUSES = {'loading', 'in_transit', 'arrived'}
TERMINAL_ITEM_CHECK_STATUSES = {'verified', 'damaged', 'missing', 'rejected'}

_CATALOGUES = {
    'route': (ROUTE_STATUSES, ROUTE_TRANSITIONS),
    'stop': (STOP_STATUSES, STOP_TRANSITIONS),
    'transfer': (TRANSFER_STATUSES, TRANSFER_TRANSITIONS),
}


def get_status_info(entity, status_value):
    """Get status information for an entity kind ('route', 'stop', 'transfer')"""
    statuses, _ = _CATALOGUES[entity]
    return statuses.get(status_value)


def get_status_label(entity, status_value):
    """Human readable label, falls back to the raw value"""
    info = get_status_info(entity, status_value)
    return info['label'] if info else str(status_value)


def can_transition_to(entity, from_status, to_status):
    """Check if status transition is allowed"""
    _, transitions = _CATALOGUES[entity]
    return to_status in transitions.get(from_status, [])


def get_allowed_transitions(entity, from_status):
    """Get list of allowed status transitions from current status"""
    _, transitions = _CATALOGUES[entity]
    return list(transitions.get(from_status, []))


def normalize_stop_kind(raw):
    """Map a backend stop type label onto an engine stop kind"""
    if not raw:
        return 'visit'
    if raw in STOP_KINDS:
        return STOP_KINDS[raw]
    lowered = str(raw).strip().lower()
    if lowered in STOP_KINDS.values():
        return lowered
    return lowered.replace(' ', '_')
