from typing import Optional


class EdgeError(Exception):
    status_code = 500
    detail = "Internal edge error"

    def __init__(self, detail: Optional[str] = None, headers: Optional[dict[str, str]] = None):
        super().__init__(detail or self.detail)
        self.detail = detail or self.detail
        self.headers = headers or {}

    @property
    def body(self) -> str:
        return self.detail


class ClientRedirectRequired(EdgeError):
    status_code = 301
    detail = "Moved Permanently"

    def __init__(self, location: str):
        super().__init__(headers={"location": location})
        self.location = location

    @property
    def body(self) -> str:
        return ""


class BadRequest(EdgeError):
    status_code = 400
    detail = "Bad Request"


class NotFound(EdgeError):
    status_code = 404
    detail = "Not Found"


class Forbidden(NotFound):
    """Sensitive-file probe. Reported to the client as a bare 404."""

    @property
    def body(self) -> str:
        return ""


class BadGateway(EdgeError):
    status_code = 502
    detail = "Bad Gateway"


class GatewayTimeout(EdgeError):
    status_code = 504
    detail = "Gateway Timeout"
