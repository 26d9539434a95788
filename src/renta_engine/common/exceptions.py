"""Renta-Engine exception hierarchy."""


class RentaError(Exception):
    """Base exception for all Renta errors."""

    def __init__(self, message: str = "", code: str = "RENTA_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class MachineNotFoundError(RentaError):
    """Raised when a machine cannot be found in the database."""

    def __init__(self, message: str = "Machine not found"):
        super().__init__(message, code="MACHINE_NOT_FOUND")


class MachineUnavailableError(RentaError):
    """Raised when the requested machine is not online."""

    def __init__(self, message: str = "Machine is not available"):
        super().__init__(message, code="MACHINE_UNAVAILABLE")


class SessionNotFoundError(RentaError):
    """Raised when a rental session cannot be found."""

    def __init__(self, message: str = "Session not found"):
        super().__init__(message, code="SESSION_NOT_FOUND")


class SessionConflictError(RentaError):
    """Raised on a concurrent or duplicate session transition.

    Callers must not retry blindly: the session already moved on.
    """

    def __init__(self, message: str = "Session transition conflict"):
        super().__init__(message, code="SESSION_CONFLICT")


class InvalidDurationError(RentaError):
    """Raised when a requested rental duration is out of range."""

    def __init__(self, message: str = "Invalid rental duration"):
        super().__init__(message, code="INVALID_DURATION")


class InvalidPaymentRequestError(RentaError):
    """Raised when a payment cannot be opened with the given details."""

    def __init__(self, message: str = "Invalid payment request"):
        super().__init__(message, code="INVALID_PAYMENT_REQUEST")


class UnknownPaymentError(RentaError):
    """Raised when a notification references an untraceable payment."""

    def __init__(self, message: str = "Unknown payment"):
        super().__init__(message, code="UNKNOWN_PAYMENT")


class PaymentProviderError(RentaError):
    """Raised when the payment provider refuses a request."""

    def __init__(self, message: str = "Payment provider error", code: str = "PROVIDER_ERROR"):
        super().__init__(message, code=code)


class TransientProviderError(PaymentProviderError):
    """Raised when the provider stayed unreachable after all retries."""

    def __init__(self, message: str = "Payment provider unavailable"):
        super().__init__(message, code="PROVIDER_UNAVAILABLE")


class DeviceUnreachableError(RentaError):
    """Raised when a command could not be published to the device channel."""

    def __init__(self, message: str = "Device channel unreachable"):
        super().__init__(message, code="DEVICE_UNREACHABLE")


class ReconciliationDrift(RentaError):
    """Persisted state found diverging from the fleet invariants.

    Never raised to a caller; the sweeper repairs it and logs it.
    """

    def __init__(self, message: str = "Reconciliation drift detected"):
        super().__init__(message, code="RECONCILIATION_DRIFT")
