from fastapi import status


class ZKControlError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ZKControlError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(ZKControlError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(ZKControlError):
    status_code = status.HTTP_409_CONFLICT


class InternalError(ZKControlError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class UidExhaustedError(InternalError):
    """The device identifier sequence ran past the terminal's 16-bit range."""


# -----------------------------
# Attendance terminal
# -----------------------------
class TransientDeviceFault(ZKControlError):
    """Terminal fault. Not retried inline; the next scheduled sync is the retry."""

    status_code = status.HTTP_502_BAD_GATEWAY


class ConnectFailure(TransientDeviceFault):
    pass


class OperationFailure(TransientDeviceFault):
    pass


class UnsupportedOperation(OperationFailure):
    """The terminal rejected the command (some firmware refuses attendance reads)."""


class DeviceTimeout(TransientDeviceFault):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


# -----------------------------
# Fingerprint reader
# -----------------------------
class ReaderError(ZKControlError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class DeviceNotFound(ReaderError):
    pass


class HandleOpenFailed(ReaderError):
    pass


class CaptureTimeout(ReaderError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
