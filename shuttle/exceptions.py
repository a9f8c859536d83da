"""
Error types raised by the dispatch, tracking and feed layers.

Each error carries the HTTP status the views answer with. Feed handlers log
and drop the offending message instead.
"""
from http import HTTPStatus


class ShuttleError(Exception):
    status_code = HTTPStatus.BAD_REQUEST
    detail = "Request could not be processed"

    def __init__(self, detail=None):
        self.detail = detail or self.detail
        super().__init__(self.detail)


class InvalidInput(ShuttleError):
    status_code = HTTPStatus.BAD_REQUEST
    detail = "Invalid input"


class NotFound(ShuttleError):
    status_code = HTTPStatus.NOT_FOUND
    detail = "Not found"


class InvalidTransition(ShuttleError):
    status_code = HTTPStatus.CONFLICT
    detail = "Transition not allowed in the current state"


class PendingCallExists(InvalidTransition):
    detail = "Stop already has a pending call"


class VehicleUnavailable(InvalidTransition):
    detail = "Vehicle is not available"


class TrackingServerError(ShuttleError):
    status_code = HTTPStatus.BAD_GATEWAY
    detail = "Tracking server request failed"
