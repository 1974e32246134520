from typing import Iterable, Optional
from starlette.types import Scope

HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

DEFAULT_PORTS = {"http": 80, "https": 443}


def split_host(host: str) -> tuple[str, Optional[int]]:
    """Split a Host header into name and port, keeping IPv6 brackets."""
    if host.startswith("["):
        end = host.find("]")
        name, rest = host[:end + 1], host[end + 1:]
    elif host.count(":") == 1:
        name, _, port = host.partition(":")
        rest = ":" + port
    else:
        name, rest = host, ""
    if rest.startswith(":") and rest[1:].isdigit():
        return name, int(rest[1:])
    return name, None


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    tokens = set()
    for k, v in headers:
        if k == "connection":
            tokens.update(t.strip().lower() for t in v.split(",") if t.strip())
    return tokens


class HeaderRewriter:
    """Builds the header set sent upstream and filters the one sent back.

    Header values are handled as latin-1 text so that any byte a client or
    upstream sent survives the round trip unchanged.
    """

    def _strip(self, headers: list[tuple[str, str]], extra: Iterable[str] = ()) -> list[tuple[str, str]]:
        drop = HOP_BY_HOP | _connection_tokens(headers) | set(extra)
        return [(k, v) for k, v in headers if k not in drop]

    def rewrite(
        self,
        headers: list[tuple[bytes, bytes]],
        scope: Scope,
        request_id: str,
    ) -> list[tuple[str, str]]:
        decoded = [(k.decode("latin-1").lower(), v.decode("latin-1")) for k, v in headers]
        original = dict(decoded)

        scheme = scope.get("scheme", "http")
        host, host_port = split_host(original.get("host", ""))
        server = scope.get("server")
        port = server[1] if server and server[1] else host_port or DEFAULT_PORTS.get(scheme, 80)
        client = scope.get("client")
        client_ip = client[0] if client else None

        forwarded_for = original.get("x-forwarded-for")
        if client_ip:
            forwarded_for = f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip

        replaced = {
            "host", "x-real-ip", "x-forwarded-for", "x-forwarded-proto",
            "x-forwarded-host", "x-forwarded-port", "x-request-id",
        }
        rewritten = self._strip(decoded, extra=replaced)
        rewritten.append(("host", host))
        if client_ip:
            rewritten.append(("x-real-ip", client_ip))
        if forwarded_for:
            rewritten.append(("x-forwarded-for", forwarded_for))
        rewritten.append(("x-forwarded-proto", scheme))
        rewritten.append(("x-forwarded-host", host))
        rewritten.append(("x-forwarded-port", str(port)))
        rewritten.append(("x-request-id", request_id))
        return rewritten

    def filter_response(self, headers: Iterable[tuple[bytes, bytes]]) -> list[tuple[str, str]]:
        lowered = [(k.decode("latin-1").lower(), v.decode("latin-1")) for k, v in headers]
        return self._strip(lowered)


def encode_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[bytes, bytes]]:
    return [(k.encode("latin-1"), v.encode("latin-1")) for k, v in headers]
