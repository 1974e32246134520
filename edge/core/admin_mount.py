from typing import Iterable
from starlette.types import ASGIApp, Scope, Receive, Send

ADMIN_PREFIX = "/__"
LOOPBACK = ("127.0.0.1", "::1")


class AdminMount:
    """Sends ``/__*`` requests from trusted client addresses to the admin app.

    Everyone else, including remote callers probing admin paths, goes to the
    edge router like any other request.
    """

    def __init__(
        self,
        admin_app: ASGIApp,
        main_app: ASGIApp,
        allowed_clients: Iterable[str] = LOOPBACK,
    ) -> None:
        self.admin_app = admin_app
        self.main_app = main_app
        self.allowed_clients = frozenset(allowed_clients)

    def _is_admin(self, scope: Scope) -> bool:
        if scope["type"] != "http" or not scope["path"].startswith(ADMIN_PREFIX):
            return False
        client = scope.get("client")
        return bool(client) and client[0] in self.allowed_clients

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._is_admin(scope):
            await self.admin_app(scope, receive, send)
        else:
            await self.main_app(scope, receive, send)
