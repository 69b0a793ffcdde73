"""
Error taxonomy for the field execution engine.

- FieldValidationError: client-detectable precondition not met, raised before
  any network call. The user corrects the data and retries.
- FrmNetworkError: the backend call did not complete. Local state is left as it
  was before the call; the caller retries explicitly.
- FrmApiError: the backend answered but rejected the call (or answered with
  something unusable).
- OperationInProgressError: a mutation on the same visit/transfer is still
  outstanding.

Partial-failure (sync warning) responses are not exceptions: they come back as
a blocked finalize outcome (see services_visit_completion).
"""


class FieldEngineError(Exception):
    """Base class for every error raised by the engine"""


class FieldValidationError(FieldEngineError, ValueError):
    """A precondition the client can check was not met"""

    def __init__(self, message, reasons=None):
        super().__init__(message)
        self.message = message
        self.reasons = list(reasons) if reasons else [message]


class ActivityTransitionError(FieldValidationError):
    """Requested activity transition is not allowed by the gate"""


class TransferTransitionError(FieldValidationError):
    """Requested transfer step is not allowed from the current state"""


class OperationInProgressError(FieldEngineError):
    """Another mutating call for the same unit of work is still running"""

    def __init__(self, unit_id):
        super().__init__(f"An operation for {unit_id} is already in progress")
        self.unit_id = unit_id


class FrmNetworkError(FieldEngineError):
    """Transient transport failure (timeout, connection refused, 5xx)"""


class FrmApiError(FieldEngineError):
    """The backend rejected the request or returned an unusable response"""

    def __init__(self, message, status_code=None, endpoint=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.endpoint = endpoint


class StorageUnavailableError(FieldEngineError):
    """Local progress storage could not be read or written"""
