"""Exceptions for mbgateway: register-map defects, field-bus failures and request rejections."""


class GatewayError(Exception):
    """Base exception for mbgateway."""

    pass


class ConfigurationError(GatewayError):
    """Raised for register-map defects (bad storage offset, duplicate CID, field outside its block)."""

    def __init__(self, message: str, *, cid: int | None = None) -> None:
        self.cid = cid
        super().__init__(message)


class CharacteristicNotFoundError(GatewayError):
    """Raised when no characteristic matches a CID or a (kind, slave, register) address.

    The polling loop treats this as the end-of-table signal, not as a failure.
    """

    def __init__(self, cid: int | None = None, message: str | None = None) -> None:
        self.cid = cid
        self._msg = message or f"Characteristic not found: {cid!r}"
        super().__init__(self._msg)


class TransportError(GatewayError):
    """Raised when a field-bus exchange fails (wraps pymodbus or connection errors)."""

    CONNECT = "connect"
    TIMEOUT = "timeout"
    DEVICE = "device"
    MALFORMED = "malformed"
    UNSUPPORTED = "unsupported"

    def __init__(
        self,
        code: str,
        message: str,
        *,
        device_address: int | None = None,
        kind: str | None = None,
        start: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.code = code
        self.device_address = device_address
        self.kind = kind
        self.start = start
        self.cause = cause
        super().__init__(message)


class InvalidArgumentError(GatewayError):
    """Raised for unknown function codes, disallowed access or values the characteristic cannot hold."""

    pass


class RequestParseError(InvalidArgumentError):
    """Raised when a request body is not valid JSON or misses a required integer field."""

    pass


class CapacityExceededError(GatewayError):
    """Raised when a request body does not fit the scratch buffer."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"content too long: {size} bytes (limit {limit})")
