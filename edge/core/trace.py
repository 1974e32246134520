import uuid
import contextvars
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Scope, Receive, Send, Message

REQUEST_ID_HEADER = "x-request-id"

request_id_var = contextvars.ContextVar("request_id", default=None)


def new_request_id() -> str:
    return uuid.uuid4().hex


def resolve_request_id(scope: Scope) -> str:
    """Request id for this scope: the one already bound, the client's, or a new one."""
    current = request_id_var.get()
    if current:
        return current
    inbound = Headers(scope=scope).get(REQUEST_ID_HEADER, "").strip()
    return inbound or new_request_id()


class RequestIdMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        inbound = Headers(scope=scope).get(REQUEST_ID_HEADER, "").strip()
        request_id = inbound or new_request_id()
        token = request_id_var.set(request_id)

        async def send_with_request_id(message: Message):
            if message["type"] == "http.response.start":
                headers = message.setdefault("headers", [])
                if not any(k.lower() == b"x-request-id" for k, _ in headers):
                    headers.append((b"x-request-id", request_id.encode("latin-1")))
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(token)
