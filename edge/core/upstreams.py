import asyncio
import logging
import socket
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Awaitable, Callable, Mapping, Optional

logger = logging.getLogger(__name__)

Resolve = Callable[[str, int], Awaitable[str]]


@dataclass(frozen=True)
class UpstreamTarget:
    name: str
    host: str
    port: int
    scheme: str = "http"
    address: Optional[str] = None

    @classmethod
    def parse(cls, name: str, value: str, scheme: str = "http") -> "UpstreamTarget":
        """Parse ``host:port`` (or ``http://host:port``) into a target."""
        if "://" in value:
            scheme, value = value.split("://", 1)
        value = value.rstrip("/")
        if value.startswith("["):
            host, _, port = value[1:].partition("]")
            port = port.lstrip(":")
        else:
            host, _, port = value.rpartition(":")
            if not host:
                host, port = value, ""
        default_port = 443 if scheme == "https" else 80
        return cls(name=name, host=host, port=int(port) if port else default_port, scheme=scheme)

    @property
    def base_url(self) -> str:
        address = self.address or self.host
        if ":" in address:
            address = f"[{address}]"
        return f"{self.scheme}://{address}:{self.port}"


async def resolve_with_dns(host: str, port: int) -> str:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    if not infos:
        raise OSError(f"No addresses for {host}")
    return infos[0][4][0]


class UpstreamResolver:
    """Name → address cache for the upstreams, refreshed by one background task.

    The current mapping is an immutable snapshot; a refresh builds a new one
    and swaps the reference, so readers never lock and never see a partial
    update.
    """

    def __init__(
        self,
        targets: Mapping[str, UpstreamTarget],
        ttl: float = 30.0,
        resolve: Optional[Resolve] = None,
    ) -> None:
        self.ttl = ttl
        self._resolve = resolve or resolve_with_dns
        self._snapshot: Mapping[str, UpstreamTarget] = MappingProxyType(dict(targets))
        self._task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> Mapping[str, UpstreamTarget]:
        return self._snapshot

    def get(self, name: str) -> Optional[UpstreamTarget]:
        return self._snapshot.get(name)

    async def _resolve_one(self, target: UpstreamTarget) -> UpstreamTarget:
        try:
            address = await self._resolve(target.host, target.port)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not resolve upstream {target.name} ({target.host}): {e}")
            return target
        if address != target.address:
            logger.info(f"Upstream {target.name} resolved to {address}:{target.port}")
        return replace(target, address=address)

    async def refresh(self) -> Mapping[str, UpstreamTarget]:
        current = self._snapshot
        resolved = await asyncio.gather(*(self._resolve_one(t) for t in current.values()))
        self._snapshot = MappingProxyType({t.name: t for t in resolved})
        return self._snapshot

    async def _run(self):
        while True:
            await self.refresh()
            await asyncio.sleep(self.ttl)

    def start(self):
        """Begin periodic resolution. A ttl of 0 leaves name resolution to the HTTP client."""
        if self.ttl > 0 and self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    def to_dict(self) -> dict[str, dict]:
        return {
            name: {
                "host": t.host,
                "port": t.port,
                "address": t.address,
                "url": t.base_url,
            }
            for name, t in self._snapshot.items()
        }
