"""
Field execution entities as the engine sees them.

Routes, stops, visits and transfers are server-authoritative snapshots: the
engine never edits them in place, it re-fetches after every mutating call.
Each entity is built from the backend payload with from_dict().
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from field_status_constants import (
    ACTIVE_STOP_STATUSES, TERMINAL_STOP_STATUSES, TERMINAL_VISIT_STATUSES,
    TERMINAL_TRANSFER_STATUSES, TERMINAL_ITEM_CHECK_STATUSES, normalize_stop_kind
)
from timezone_utils import parse_server_datetime

logger = logging.getLogger(__name__)


def _load_json(value, default):
    """Backend long-text fields arrive either as JSON strings or already decoded"""
    if value is None or value == '':
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (ValueError, TypeError):
        logger.warning(f"Could not parse JSON field: {str(value)[:100]}")
        return default


def _as_float(value, default=0.0):
    try:
        return float(value) if value is not None else default
    except (TypeError, ValueError):
        return default


def _slug(text):
    return re.sub(r'[^a-z0-9]+', '_', str(text).strip().lower()).strip('_')


def activity_key_for(activity_type, activity_name):
    """
    Stable key for an activity inside a visit.

    The backend only knows activity types ('Photo', 'Stock Check', 'Custom'...)
    and free-text names, so several activities may share a type. Known
    activities are recognised by type or name; anything else is keyed by its
    slugified name.
    """
    activity_type = (activity_type or '').strip().lower()
    name = (activity_name or '').strip().lower()

    if activity_type == 'stock check' or 'stock' in name:
        return 'stock_opname'
    if activity_type == 'photo' or 'photo' in name:
        return 'photos'
    if 'payment' in name or 'collect' in name:
        return 'payment'
    if 'order' in name:
        return 'sales_order'
    if activity_type == 'competitor tracking' or 'survey' in name or 'competitor' in name:
        return 'competitor_survey'
    return _slug(activity_name or activity_type) or 'activity'


# =============================================================================
# MEDIA
# =============================================================================

@dataclass(frozen=True)
class MediaRef:
    """Opaque reference to a captured photo/signature"""
    id: str
    url: str
    file_name: Optional[str] = None
    thumbnail_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        # Accepts both File documents (name/file_url) and captured photo items (id/url)
        media_id = data.get('id') or data.get('name') or data.get('file_url') or data.get('url')
        url = data.get('url') or data.get('file_url') or ''
        return cls(
            id=str(media_id),
            url=url,
            file_name=data.get('file_name'),
            thumbnail_url=data.get('thumbnail_url'),
        )

    def to_dict(self):
        data = {'id': self.id, 'url': self.url}
        if self.file_name:
            data['file_name'] = self.file_name
        if self.thumbnail_url:
            data['thumbnail_url'] = self.thumbnail_url
        return data


# =============================================================================
# ACTIVITY RESULTS (tagged by activity kind)
# =============================================================================

@dataclass(frozen=True)
class PhotoResult:
    kind: ClassVar[str] = 'photo'
    media: Tuple[MediaRef, ...] = ()

    def to_payload(self):
        return {
            'photo_count': len(self.media),
            'photo_urls': [m.url for m in self.media],
        }

    @classmethod
    def from_payload(cls, data):
        urls = data.get('photo_urls') or []
        return cls(media=tuple(MediaRef(id=url, url=url) for url in urls))


@dataclass(frozen=True)
class StockCount:
    item_code: str
    quantity: float
    uom: Optional[str] = None


@dataclass(frozen=True)
class StockCountResult:
    kind: ClassVar[str] = 'stock_count'
    counts: Tuple[StockCount, ...] = ()

    def to_payload(self):
        return {
            'stock_counts': [
                {'item_code': c.item_code, 'quantity': c.quantity, 'uom': c.uom}
                for c in self.counts
            ]
        }

    @classmethod
    def from_payload(cls, data):
        counts = []
        for row in data.get('stock_counts') or []:
            counts.append(StockCount(
                item_code=str(row.get('item_code') or row.get('item') or ''),
                quantity=_as_float(row.get('quantity', row.get('qty'))),
                uom=row.get('uom'),
            ))
        return cls(counts=tuple(counts))


@dataclass(frozen=True)
class PaymentResult:
    kind: ClassVar[str] = 'payment'
    payment_id: str = ''
    amount: Optional[float] = None

    def to_payload(self):
        payload = {'payment_id': self.payment_id}
        if self.amount is not None:
            payload['amount'] = self.amount
        return payload

    @classmethod
    def from_payload(cls, data):
        amount = data.get('amount')
        return cls(payment_id=str(data.get('payment_id') or ''),
                   amount=_as_float(amount) if amount is not None else None)


@dataclass(frozen=True)
class OrderResult:
    kind: ClassVar[str] = 'order'
    order_id: str = ''

    def to_payload(self):
        return {'order_id': self.order_id}

    @classmethod
    def from_payload(cls, data):
        return cls(order_id=str(data.get('order_id') or ''))


@dataclass(frozen=True)
class SurveyResult:
    kind: ClassVar[str] = 'survey'
    survey_id: str = ''

    def to_payload(self):
        return {'survey_id': self.survey_id}

    @classmethod
    def from_payload(cls, data):
        return cls(survey_id=str(data.get('survey_id') or ''))


@dataclass(frozen=True)
class OpaqueResult:
    """Catch-all for activity kinds the engine does not know about"""
    kind: ClassVar[str] = 'opaque'
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self):
        return dict(self.data)

    @classmethod
    def from_payload(cls, data):
        return cls(data=dict(data))


RESULT_TYPES_BY_KEY = {
    'photos': PhotoResult,
    'stock_opname': StockCountResult,
    'payment': PaymentResult,
    'sales_order': OrderResult,
    'competitor_survey': SurveyResult,
}


def result_from_payload(activity_key, payload):
    """Build the typed result for an activity from its JSON payload"""
    data = _load_json(payload, {})
    if not isinstance(data, dict):
        data = {'value': data}
    result_type = RESULT_TYPES_BY_KEY.get(activity_key, OpaqueResult)
    return result_type.from_payload(data)


# =============================================================================
# ROUTE / STOP
# =============================================================================

@dataclass
class Stop:
    idx: int
    sequence: int
    kind: str = 'visit'
    status: str = 'pending'
    name: Optional[str] = None
    customer: Optional[str] = None
    visit_id: Optional[str] = None
    transfer_id: Optional[str] = None
    delivery_order: Optional[str] = None
    actual_arrival: Any = None
    departure_time: Any = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    arrival_latitude: Optional[float] = None
    arrival_longitude: Optional[float] = None
    is_unplanned: bool = False
    skip_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        idx = data.get('idx')
        sequence = data.get('sequence') or idx or 0
        return cls(
            idx=int(idx if idx is not None else sequence),
            sequence=int(sequence),
            kind=normalize_stop_kind(data.get('stop_type')),
            status=data.get('status') or 'pending',
            name=data.get('stop_name') or data.get('customer_name') or data.get('location_name'),
            customer=data.get('customer'),
            visit_id=data.get('sales_visit') or None,
            transfer_id=data.get('stock_transfer') or None,
            delivery_order=data.get('delivery_order') or None,
            actual_arrival=parse_server_datetime(data.get('actual_arrival')),
            departure_time=parse_server_datetime(data.get('departure_time')),
            latitude=data.get('latitude'),
            longitude=data.get('longitude'),
            arrival_latitude=data.get('arrival_latitude'),
            arrival_longitude=data.get('arrival_longitude'),
            is_unplanned=bool(data.get('is_unplanned')),
            skip_reason=data.get('skip_reason') or None,
        )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STOP_STATUSES

    @property
    def is_active(self):
        return self.status in ACTIVE_STOP_STATUSES

    def __repr__(self):
        return f"<Stop {self.sequence} ({self.kind}): {self.status}>"


@dataclass
class Route:
    id: str
    route_date: Any = None
    assigned_user: Optional[str] = None
    status: str = 'not_started'
    stops: List[Stop] = field(default_factory=list)
    total_stops: int = 0
    completed_stops: int = 0
    skipped_stops: int = 0
    start_time: Any = None
    end_time: Any = None

    @classmethod
    def from_dict(cls, data):
        stops = sorted((Stop.from_dict(s) for s in data.get('stops') or []),
                       key=lambda s: (s.sequence, s.idx))
        return cls(
            id=data.get('name') or data.get('id'),
            route_date=data.get('route_date'),
            assigned_user=data.get('assigned_user'),
            status=data.get('status') or 'not_started',
            stops=stops,
            total_stops=int(data.get('total_stops') or len(stops)),
            completed_stops=int(data.get('completed_stops') or sum(1 for s in stops if s.status == 'completed')),
            skipped_stops=int(data.get('skipped_stops') or sum(1 for s in stops if s.status == 'skipped')),
            start_time=parse_server_datetime(data.get('start_time')),
            end_time=parse_server_datetime(data.get('end_time')),
        )

    def stop_by_idx(self, stop_idx):
        for stop in self.stops:
            if stop.idx == stop_idx:
                return stop
        return None

    def stop_for_visit(self, visit_id):
        for stop in self.stops:
            if stop.visit_id == visit_id:
                return stop
        return None

    def __repr__(self):
        return f"<Route {self.id}: {self.status}, {len(self.stops)} stops>"


# =============================================================================
# VISIT / ACTIVITY
# =============================================================================

@dataclass
class Activity:
    key: str
    activity_type: str
    activity_name: str
    sequence: int
    mandatory: bool = False
    status: str = 'pending'
    result: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data, position=0):
        activity_type = data.get('activity_type') or 'Custom'
        activity_name = data.get('activity_name') or activity_type
        return cls(
            key=data.get('key') or activity_key_for(activity_type, activity_name),
            activity_type=activity_type,
            activity_name=activity_name,
            sequence=int(data.get('sequence') or data.get('idx') or position),
            mandatory=bool(int(data.get('mandatory') or 0)),
            status=(data.get('status') or 'pending').lower(),
            result=_load_json(data.get('result'), {}),
        )


@dataclass
class Visit:
    id: str
    status: str = 'planned'
    customer: Optional[str] = None
    activities: List[Activity] = field(default_factory=list)
    check_in_time: Any = None
    check_out_time: Any = None
    check_in_latitude: Optional[float] = None
    check_in_longitude: Optional[float] = None

    @classmethod
    def from_dict(cls, data):
        raw_activities = _load_json(data.get('activities'), [])
        activities = []
        if isinstance(raw_activities, list):
            for position, row in enumerate(raw_activities, start=1):
                if isinstance(row, dict):
                    activities.append(Activity.from_dict(row, position))
        activities.sort(key=lambda a: a.sequence)
        return cls(
            id=data.get('name') or data.get('visit_id') or data.get('id'),
            status=(data.get('status') or 'planned').lower(),
            customer=data.get('customer'),
            activities=activities,
            check_in_time=parse_server_datetime(data.get('check_in_time')),
            check_out_time=parse_server_datetime(data.get('check_out_time')),
            check_in_latitude=data.get('check_in_latitude') or data.get('gps_latitude'),
            check_in_longitude=data.get('check_in_longitude') or data.get('gps_longitude'),
        )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_VISIT_STATUSES


# =============================================================================
# STOCK TRANSFER
# =============================================================================

@dataclass
class TransferItemCheck:
    product: str
    product_name: Optional[str] = None
    expected_qty: float = 0.0
    loaded_qty: float = 0.0
    received_qty: float = 0.0
    verified_qty: float = 0.0
    damaged_qty: float = 0.0
    missing_qty: float = 0.0
    check_status: str = 'pending'
    delivery_order: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        return cls(
            product=str(data.get('product') or data.get('item_code') or ''),
            product_name=data.get('product_name') or data.get('item_name'),
            expected_qty=_as_float(data.get('expected_qty', data.get('quantity'))),
            loaded_qty=_as_float(data.get('quantity_loaded', data.get('loaded_qty'))),
            received_qty=_as_float(data.get('quantity_received', data.get('received_qty'))),
            verified_qty=_as_float(data.get('verified_qty')),
            damaged_qty=_as_float(data.get('damaged_qty')),
            missing_qty=_as_float(data.get('missing_qty')),
            check_status=data.get('check_status') or 'pending',
            delivery_order=data.get('delivery_order'),
        )

    @property
    def accounted_qty(self):
        return self.verified_qty + self.damaged_qty + self.missing_qty

    @property
    def is_checked(self):
        return self.check_status in TERMINAL_ITEM_CHECK_STATUSES


@dataclass
class DeliveryLink:
    delivery_order: str
    customer_name: Optional[str] = None
    item_count: int = 0
    delivery_status: str = 'pending'

    @classmethod
    def from_dict(cls, data):
        return cls(
            delivery_order=data.get('delivery_order'),
            customer_name=data.get('customer_name'),
            item_count=int(data.get('item_count') or 0),
            delivery_status=data.get('delivery_status') or 'pending',
        )


@dataclass
class Transfer:
    id: str
    transfer_type: str = 'wh_to_dc'
    status: str = 'pending'
    source_warehouse: Optional[str] = None
    dest_warehouse: Optional[str] = None
    items: List[TransferItemCheck] = field(default_factory=list)
    deliveries: List[DeliveryLink] = field(default_factory=list)
    route: Optional[str] = None
    route_stop_idx: Optional[int] = None
    received_by: Optional[str] = None
    received_at: Any = None
    handoff_photo: Optional[str] = None
    handoff_notes: Optional[str] = None
    loading_completed_at: Any = None
    arrived_at: Any = None

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data.get('name') or data.get('id'),
            transfer_type=data.get('transfer_type') or 'wh_to_dc',
            status=data.get('sfa_state') or data.get('status') or 'pending',
            source_warehouse=data.get('source_warehouse'),
            dest_warehouse=data.get('dest_warehouse'),
            items=[TransferItemCheck.from_dict(i) for i in data.get('items') or []],
            deliveries=[DeliveryLink.from_dict(d) for d in data.get('delivery_orders') or []],
            route=data.get('route'),
            route_stop_idx=data.get('route_stop_idx'),
            received_by=data.get('received_by'),
            received_at=parse_server_datetime(data.get('received_at')),
            handoff_photo=data.get('handoff_photo'),
            handoff_notes=data.get('handoff_notes'),
            loading_completed_at=parse_server_datetime(data.get('loading_completed_at')),
            arrived_at=parse_server_datetime(data.get('arrived_at')),
        )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_TRANSFER_STATUSES

    def item(self, product):
        for item in self.items:
            if item.product == product:
                return item
        return None

    def __repr__(self):
        return f"<Transfer {self.id}: {self.status}, {len(self.items)} items>"
