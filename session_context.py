"""
Session context for one field agent.

Everything the engine needs for an agent's working session is held here and
passed explicitly to every engine operation: the backend, the local progress
store, location capture settings, and the last server snapshots of the route,
open visits and transfers.
"""
import logging
import threading
from contextlib import contextmanager

import config_frm
from field_errors import OperationInProgressError
from location_utils import capture_location
from progress_store import ProgressStore

logger = logging.getLogger(__name__)


class SessionContext:

    def __init__(self, agent_id, backend, store=None, location_provider=None,
                 location_timeout=None, strict_sequence=None):
        self.agent_id = agent_id
        self.backend = backend
        self.store = store if store is not None else ProgressStore(actor=agent_id)
        self.location_provider = location_provider
        self.location_timeout = (location_timeout if location_timeout is not None
                                 else config_frm.FIELD_LOCATION_TIMEOUT)
        self.strict_sequence = (strict_sequence if strict_sequence is not None
                                else config_frm.FIELD_STRICT_SEQUENCE)

        self.route = None
        self.workspaces = {}   # visit id -> VisitWorkspace
        self.transfers = {}    # transfer id -> Transfer

        self._lock = threading.Lock()
        self._in_flight = set()

    @contextmanager
    def mutation(self, unit_id):
        """
        Serialize mutating calls per route/visit/transfer id.

        Raises:
            OperationInProgressError: another mutation on unit_id is outstanding
        """
        with self._lock:
            if unit_id in self._in_flight:
                logger.warning(f"Rejected concurrent mutation on {unit_id} for agent {self.agent_id}")
                raise OperationInProgressError(unit_id)
            self._in_flight.add(unit_id)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(unit_id)

    def is_busy(self, unit_id):
        with self._lock:
            return unit_id in self._in_flight

    def capture_location(self, provider=None):
        """Read the location from `provider`, falling back to the session default"""
        return capture_location(provider or self.location_provider, self.location_timeout)

    def __repr__(self):
        return f"<SessionContext {self.agent_id}>"
