import json
import time
import uuid
import requests
import logging
from dataclasses import dataclass, field
from typing import List, Optional
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from contextvars import ContextVar

import config_frm
from field_entities import MediaRef, Route, Transfer, Visit
from field_errors import FrmApiError, FrmNetworkError

logger = logging.getLogger(__name__)

# Context variable for correlation ID (thread-safe)
_correlation_id: ContextVar[str] = ContextVar('frm_correlation_id', default='')


def get_correlation_id() -> str:
    """Get the current correlation ID, or generate one if not set."""
    cid = _correlation_id.get()
    if not cid:
        cid = f"frm_{uuid.uuid4().hex[:12]}"
        _correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str | None = None) -> str:
    """Set a correlation ID for the current context. Returns the ID."""
    if cid is None:
        cid = f"frm_{uuid.uuid4().hex[:12]}"
    _correlation_id.set(cid)
    return cid


def clear_correlation_id():
    """Clear the correlation ID for the current context."""
    _correlation_id.set('')


FRM_BACKOFF_FACTOR = 0.5   # Wait 0.5s, 1s, 2s between retries

# Gateway errors mean the request never reached the application
TRANSIENT_STATUS_CODES = (429, 502, 503, 504)


def _get_session():
    """
    Create a requests session with retry logic and connection pooling.

    Only GET is retried: a retried POST could apply a stop transition or an
    item count twice.
    """
    session = requests.Session()
    retry_strategy = Retry(
        total=config_frm.FRM_GET_RETRIES,
        backoff_factor=FRM_BACKOFF_FACTOR,
        status_forcelist=list(TRANSIENT_STATUS_CODES),
        allowed_methods=["GET"],
        raise_on_status=False  # Don't raise, we'll handle it ourselves
    )
    adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=5, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


# Reusable session
_session = None


def get_frm_session():
    """Get or create the FRM session."""
    global _session
    if _session is None:
        _session = _get_session()
    return _session


def _extract_error_message(resp):
    """Pull the human readable message out of a Frappe error response"""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"

    server_messages = body.get('_server_messages') if isinstance(body, dict) else None
    if server_messages:
        try:
            messages = []
            for raw in json.loads(server_messages):
                entry = json.loads(raw) if isinstance(raw, str) else raw
                messages.append(entry.get('message') if isinstance(entry, dict) else str(entry))
            messages = [m for m in messages if m]
            if messages:
                return "; ".join(messages)
        except (ValueError, TypeError, AttributeError):
            logger.debug(f"Unparseable _server_messages: {str(server_messages)[:200]}")

    if isinstance(body, dict):
        exception = body.get('exception') or body.get('message') or body.get('exc_type')
        if exception:
            # "frappe.exceptions.ValidationError: Stop already completed"
            return str(exception).split(': ', 1)[-1]
    return f"HTTP {resp.status_code}"


@dataclass
class FinalizeResponse:
    """Outcome of the remote visit completion call"""
    visit_id: str
    status: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self):
        return not self.warnings


class FrmBackend:
    """
    Client for the FRM field API.

    Every method maps onto one whitelisted backend method,
    {base}/api/method/frm.api.<module>.<method>. Responses are unwrapped from
    the {"message": ...} envelope and parsed into field entities.

    Raises (from every call):
        FrmNetworkError: timeout, connection failure or gateway error
        FrmApiError: the backend rejected the call or answered with something unusable
    """

    def __init__(self, base_url=None, api_key=None, api_secret=None, session=None, timeout=None):
        self.base_url = (base_url if base_url is not None else config_frm.FRM_BASE_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else config_frm.FRM_API_KEY
        self.api_secret = api_secret if api_secret is not None else config_frm.FRM_API_SECRET
        self._session = session
        self.timeout = timeout or (config_frm.FRM_CONNECT_TIMEOUT, config_frm.FRM_READ_TIMEOUT)

    @classmethod
    def from_env(cls):
        config_frm.validate_config()
        return cls()

    @property
    def session(self):
        return self._session if self._session is not None else get_frm_session()

    def _headers(self):
        headers = {'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"token {self.api_key}:{self.api_secret}"
        return headers

    def call(self, method: str, payload: dict | None = None, http_method: str = "POST", files=None):
        """
        Call one backend method and return the unwrapped "message".

        Args:
            method: dotted method path (e.g. 'frm.api.route.get_todays_route')
            payload: query params (GET) or JSON body (POST); form fields when files are sent
            http_method: 'GET' or 'POST'
            files: optional multipart files for uploads
        """
        start_time = time.time()
        cid = get_correlation_id()

        if not self.base_url:
            logger.error(f"[FRM] [{cid}] Missing FRM_BASE_URL")
            raise FrmApiError("FRM_BASE_URL is not configured", endpoint=method)

        url = f"{self.base_url}/api/method/{method}"
        params = {k: v for k, v in (payload or {}).items() if v is not None}

        logger.info(f"[FRM] [{cid}] Starting request: {http_method} {method}")

        try:
            if http_method.upper() == "GET":
                resp = self.session.get(url, params=params, headers=self._headers(), timeout=self.timeout)
            elif files:
                resp = self.session.post(url, data=params, files=files, headers=self._headers(), timeout=self.timeout)
            else:
                resp = self.session.post(url, json=params, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            elapsed = time.time() - start_time
            logger.error(f"[FRM] [{cid}] TIMEOUT after {elapsed:.1f}s: method={method}")
            raise FrmNetworkError(f"FRM timeout after {elapsed:.1f}s calling {method}") from e
        except requests.exceptions.ConnectionError as e:
            elapsed = time.time() - start_time
            logger.error(f"[FRM] [{cid}] CONNECTION_ERROR after {elapsed:.1f}s: method={method}, error={str(e)[:100]}")
            raise FrmNetworkError("FRM connection failed - please check network connectivity") from e

        elapsed = time.time() - start_time

        if resp.status_code in TRANSIENT_STATUS_CODES:
            logger.error(f"[FRM] [{cid}] HTTP_{resp.status_code} after {elapsed:.1f}s: method={method}")
            raise FrmNetworkError(f"FRM temporarily unavailable (HTTP {resp.status_code})")

        if resp.status_code != 200:
            message = _extract_error_message(resp)
            logger.error(f"[FRM] [{cid}] HTTP_{resp.status_code} after {elapsed:.1f}s: method={method}, response={resp.text[:300]}")
            raise FrmApiError(message, status_code=resp.status_code, endpoint=method)

        logger.info(f"[FRM] [{cid}] SUCCESS: method={method}, status={resp.status_code}, time={elapsed:.1f}s")

        try:
            body = resp.json()
        except ValueError as e:
            logger.error(f"[FRM] [{cid}] JSON_PARSE_ERROR: {resp.text[:300]}")
            raise FrmApiError(f"FRM returned invalid JSON: {resp.text[:200]}",
                              status_code=resp.status_code, endpoint=method) from e

        if isinstance(body, dict) and body.get('exc_type'):
            raise FrmApiError(_extract_error_message(resp), status_code=resp.status_code, endpoint=method)

        return body.get('message') if isinstance(body, dict) else body

    # --- parsing helpers ---

    @staticmethod
    def _route(message, method):
        if isinstance(message, dict) and isinstance(message.get('route'), dict):
            message = message['route']
        if not isinstance(message, dict) or not (message.get('name') or message.get('id')):
            raise FrmApiError("FRM returned no route", endpoint=method)
        return Route.from_dict(message)

    @staticmethod
    def _transfer(message):
        if isinstance(message, dict) and isinstance(message.get('transfer'), dict):
            message = message['transfer']
        if isinstance(message, dict) and (message.get('name') or message.get('id')):
            return Transfer.from_dict(message)
        # Acknowledgement only; callers re-fetch the transfer
        return None

    # --- routes and stops ---

    def get_todays_route(self):
        message = self.call('frm.api.route.get_todays_route', http_method="GET")
        if not message:
            return None
        return self._route(message, 'get_todays_route')

    def get_route(self, route_id):
        message = self.call('frm.api.route.get_route_execution', {'route_name': route_id}, http_method="GET")
        return self._route(message, 'get_route_execution')

    def start_route(self, route_id, latitude=None, longitude=None):
        message = self.call('frm.api.route.start_route_execution',
                            {'route_name': route_id, 'latitude': latitude, 'longitude': longitude})
        return self._route(message, 'start_route_execution')

    def end_route(self, route_id, latitude=None, longitude=None):
        message = self.call('frm.api.route.end_route_execution',
                            {'route_name': route_id, 'latitude': latitude, 'longitude': longitude})
        return self._route(message, 'end_route_execution')

    def _update_stop(self, route_id, stop_idx, status, **extra):
        payload = {'route_name': route_id, 'stop_idx': stop_idx, 'status': status}
        payload.update(extra)
        message = self.call('frm.api.route.update_route_stop_status', payload)
        return self._route(message, 'update_route_stop_status')

    def arrive_at_stop(self, route_id, stop_idx, latitude=None, longitude=None):
        return self._update_stop(route_id, stop_idx, 'arrived', latitude=latitude, longitude=longitude)

    def complete_stop(self, route_id, stop_idx):
        return self._update_stop(route_id, stop_idx, 'completed')

    def skip_stop(self, route_id, stop_idx, reason):
        return self._update_stop(route_id, stop_idx, 'skipped', skip_reason=reason)

    def add_unplanned_stop(self, route_id, stop_descriptor):
        payload = dict(stop_descriptor)
        payload['route_name'] = route_id
        message = self.call('frm.api.route.add_unplanned_stop', payload)
        return self._route(message, 'add_unplanned_stop')

    # --- visits ---

    def get_visit(self, visit_id):
        message = self.call('frm.api.visit.get_visit_details', {'visit_id': visit_id}, http_method="GET")
        if not isinstance(message, dict):
            raise FrmApiError(f"FRM returned no visit for {visit_id}", endpoint='get_visit_details')
        return Visit.from_dict(message)

    def mark_activity_completed(self, visit_id, activity_type, activity_name, status=None, result_data=None):
        payload = {
            'sales_visit': visit_id,
            'activity_type': activity_type,
            'activity_name': activity_name,
            'status': status,
            'result_data': json.dumps(result_data or {}, default=str),
        }
        return self.call('frm.api.visit.mark_activity_completed', payload)

    def get_visit_media(self, visit_id):
        message = self.call('frm.api.photo.get_visit_photos', {'sales_visit': visit_id})
        media = []
        for item in message or []:
            if isinstance(item, str):
                media.append(MediaRef(id=item, url=item))
            elif isinstance(item, dict):
                media.append(MediaRef.from_dict(item))
        return media

    def finalize_visit(self, visit_id):
        message = self.call('frm.api.visit.complete', {'sales_visit': visit_id})
        message = message if isinstance(message, dict) else {}
        warnings = [str(w) for w in message.get('sync_warnings') or []]
        return FinalizeResponse(visit_id=visit_id, status=message.get('status'), warnings=warnings)

    def upload_media(self, file_name, content, doctype=None, docname=None, fieldname=None):
        """Upload a captured photo/signature as a File and return its reference"""
        message = self.call(
            'upload_file',
            {'doctype': doctype, 'docname': docname, 'fieldname': fieldname, 'is_private': 0},
            files={'file': (file_name, content)},
        )
        if not isinstance(message, dict) or not message.get('file_url'):
            raise FrmApiError(f"Upload of {file_name} returned no file url", endpoint='upload_file')
        return MediaRef.from_dict(message)

    # --- stock transfers ---

    def get_transfer(self, transfer_id):
        message = self.call('frm.api.stock_transfer.get_transfer_detail',
                            {'transfer_id': transfer_id}, http_method="GET")
        transfer = self._transfer(message)
        if transfer is None:
            raise FrmApiError(f"FRM returned no transfer for {transfer_id}", endpoint='get_transfer_detail')
        return transfer

    def _transfer_action(self, method, transfer_id, **extra):
        payload = {'transfer_id': transfer_id}
        payload.update(extra)
        return self._transfer(self.call(f'frm.api.stock_transfer.{method}', payload))

    def start_loading_check(self, transfer_id):
        return self._transfer_action('start_loading_check', transfer_id)

    def update_item_check(self, transfer_id, product, verified_qty, damaged_qty, missing_qty, check_status):
        return self._transfer_action(
            'update_item_check', transfer_id,
            product=product, verified_qty=verified_qty, damaged_qty=damaged_qty,
            missing_qty=missing_qty, check_status=check_status,
        )

    def verify_all_items(self, transfer_id):
        return self._transfer_action('verify_all_items', transfer_id)

    def complete_loading(self, transfer_id):
        return self._transfer_action('complete_loading', transfer_id)

    def arrive_at_destination(self, transfer_id, latitude=None, longitude=None):
        return self._transfer_action('arrive_at_dc', transfer_id, latitude=latitude, longitude=longitude)

    def complete_handoff(self, transfer_id, received_by, photo=None, notes=None):
        return self._transfer_action(
            'complete_handoff', transfer_id,
            received_by=received_by,
            handoff_photo=photo.url if isinstance(photo, MediaRef) else photo,
            handoff_notes=notes,
        )

    def return_transfer(self, transfer_id, reason):
        return self._transfer_action('return_transfer', transfer_id, reason=reason)
