# services/errors.py
"""
Error taxonomy shared by the check-in engine, the scanning pipeline and registration.

Scan outcomes (success, duplicate, not_found) are results, never exceptions.
Everything here is either fatal to a scan session (Unauthorized), transient
(StorageError), or isolated to one call (CaptureError, EncodingError,
RegistrationError).
"""


class ErrorCode:
    """Stable error codes exposed to API clients and operator notices."""
    UNAUTHORIZED = 'unauthorized'
    STORAGE_ERROR = 'storage_error'
    CHECKIN_TIMEOUT = 'checkin_timeout'
    CAPTURE_ERROR = 'capture_error'
    ENCODING_ERROR = 'encoding_error'
    SESSION_CLOSED = 'session_closed'
    EVENT_NOT_FOUND = 'event_not_found'
    EVENT_FULL = 'event_full'
    ALREADY_REGISTERED = 'already_registered'
    INVALID_REGISTRATION = 'invalid_registration'
    INVALID_EVENT = 'invalid_event'
    REGISTRATION_NOT_FOUND = 'registration_not_found'


class CaptureReason:
    """Why a capture device could not be used."""
    DEVICE_UNAVAILABLE = 'device_unavailable'
    PERMISSION_DENIED = 'permission_denied'
    DEVICE_BUSY = 'device_busy'
    UNSUPPORTED = 'unsupported'

    MESSAGES = {
        DEVICE_UNAVAILABLE: 'No camera found on this device.',
        PERMISSION_DENIED: 'Camera permission denied. Allow camera access and try again.',
        DEVICE_BUSY: 'Camera is in use by another application or stopped delivering frames.',
        UNSUPPORTED: 'Camera capture is not supported on this device.',
    }


class GatepassError(Exception):
    """Base error with a code and a user-safe message."""

    code = 'error'
    transient = False

    def __init__(self, message=None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)

    def __str__(self):
        return f"{self.code}: {self.message}"

    def to_dict(self):
        return {'error_code': self.code, 'message': self.message}


class Unauthorized(GatepassError):
    """Event not found or not owned by this organizer."""

    code = ErrorCode.UNAUTHORIZED

    def __init__(self, event_id=None):
        # Same message for a missing event and a foreign one
        super().__init__("Event not found or unauthorized")
        self.event_id = event_id


class StorageError(GatepassError):
    """Storage is unavailable. Retrying the whole operation is safe."""

    code = ErrorCode.STORAGE_ERROR
    transient = True


class CheckInTimeout(StorageError):
    """The check-in call did not return in time."""

    code = ErrorCode.CHECKIN_TIMEOUT


class CaptureError(GatepassError):
    """The capture device could not be used."""

    code = ErrorCode.CAPTURE_ERROR

    def __init__(self, reason, message=None):
        self.reason = reason
        super().__init__(message or CaptureReason.MESSAGES.get(reason, 'Failed to access camera.'))

    def to_dict(self):
        result = super().to_dict()
        result['reason'] = self.reason
        return result


class EncodingError(GatepassError):
    """The credential could not be rendered as an image."""

    code = ErrorCode.ENCODING_ERROR


class SessionClosedError(GatepassError):
    """The scan session is closed."""

    code = ErrorCode.SESSION_CLOSED


class RegistrationError(GatepassError):
    """Registration could not be completed."""

    code = ErrorCode.INVALID_REGISTRATION


class InvalidRegistration(RegistrationError):
    """Registration data is invalid."""

    code = ErrorCode.INVALID_REGISTRATION


class InvalidEvent(RegistrationError):
    """Event data is invalid."""

    code = ErrorCode.INVALID_EVENT


class EventNotFound(RegistrationError):
    """Event not found."""

    code = ErrorCode.EVENT_NOT_FOUND


class EventFull(RegistrationError):
    """This event has reached its capacity."""

    code = ErrorCode.EVENT_FULL


class AlreadyRegistered(RegistrationError):
    """You are already registered for this event."""

    code = ErrorCode.ALREADY_REGISTERED


class RegistrationNotFound(RegistrationError):
    """Registration not found."""

    code = ErrorCode.REGISTRATION_NOT_FOUND
