from typing import Iterable, Optional


class CorsPolicy:
    """CORS headers for API-scoped routes.

    Preflights are answered at the edge. Regular responses get the
    allow-origin/credentials pair, replacing whatever the upstream sent so the
    browser never sees the header twice.
    """

    def __init__(
        self,
        allowed_origins: Iterable[str],
        allowed_methods: str = "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        allowed_headers: str = "Authorization, Content-Type, Accept, Origin, X-Request-ID",
        max_age: int = 86400,
        allow_credentials: bool = True,
    ) -> None:
        self.allowed_origins = tuple(allowed_origins)
        if not self.allowed_origins:
            raise ValueError("CorsPolicy needs at least one allowed origin")
        self.allowed_methods = allowed_methods
        self.allowed_headers = allowed_headers
        self.max_age = max_age
        self.allow_credentials = allow_credentials

    def allow_origin(self, origin: Optional[str]) -> str:
        if origin and origin in self.allowed_origins:
            return origin
        return self.allowed_origins[0]

    def response_headers(self, origin: Optional[str]) -> dict[str, str]:
        headers = {"access-control-allow-origin": self.allow_origin(origin)}
        if self.allow_credentials:
            headers["access-control-allow-credentials"] = "true"
        return headers

    def preflight_headers(self, origin: Optional[str]) -> dict[str, str]:
        headers = self.response_headers(origin)
        headers["vary"] = "Origin"
        headers["access-control-allow-methods"] = self.allowed_methods
        headers["access-control-allow-headers"] = self.allowed_headers
        headers["access-control-max-age"] = str(self.max_age)
        return headers
