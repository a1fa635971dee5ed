from aigate.gateway.types import ErrorCode, ErrorPayload


class ApiError(Exception):
    """An error that is already expressed in the public failure contract."""

    def __init__(self, payload: ErrorPayload, headers: dict[str, str] | None = None):
        super().__init__(payload.message)
        self.payload = payload
        self.headers = headers or {}


class BadRequestError(ApiError):
    def __init__(self, message: str = "Bad request.", details: dict | None = None):
        super().__init__(ErrorPayload(400, ErrorCode.BAD_REQUEST, message, False, details=details))


class UpstreamResponseError(ApiError):
    """The vendor answered, but with something the endpoint cannot use."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(ErrorPayload(502, ErrorCode.INTERNAL_ERROR, message, True, details=details))
