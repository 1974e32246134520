import json
import time
from asyncio import Lock
from dataclasses import dataclass
from typing import Any, Iterable, Optional


@dataclass(frozen=True)
class RouteRule:
    prefix: str
    upstream: str
    strip_prefix: bool = False
    cors: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RouteRule":
        if not isinstance(data, dict):
            raise ValueError(f"Route entry must be an object, got {type(data).__name__}")
        for key in ("prefix", "upstream"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"Route entry needs a string {key!r}: {data!r}")
        for key in ("strip_prefix", "cors"):
            if not isinstance(data.get(key, False), bool):
                raise ValueError(f"Route option {key!r} must be true or false: {data!r}")

        prefix = data["prefix"]
        if not prefix.startswith("/"):
            raise ValueError(f"Route prefix must start with '/': {prefix!r}")
        if prefix != "/":
            prefix = prefix.rstrip("/")
        return cls(
            prefix=prefix,
            upstream=data["upstream"],
            strip_prefix=data.get("strip_prefix", False),
            cors=data.get("cors", False),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "prefix": self.prefix,
            "upstream": self.upstream,
            "strip_prefix": self.strip_prefix,
            "cors": self.cors,
        }

    def matches(self, path: str) -> bool:
        if self.prefix == "/":
            return True
        return path == self.prefix or path.startswith(self.prefix + "/")

    def rewrite(self, path: str) -> str:
        if not self.strip_prefix or self.prefix == "/":
            return path
        return path[len(self.prefix):] or "/"


def build_rules(route_table: Iterable[dict[str, Any]]) -> tuple[RouteRule, ...]:
    if not isinstance(route_table, (list, tuple)):
        raise ValueError(f"Route table must be a list, got {type(route_table).__name__}")
    rules = [RouteRule.from_dict(entry) for entry in route_table]
    if not any(rule.prefix == "/" for rule in rules):
        raise ValueError("Route table needs a catch-all '/' rule")
    # longest prefix first, so the first hit is the most specific one
    return tuple(sorted(rules, key=lambda rule: len(rule.prefix), reverse=True))


def load_route_file(path: str) -> list[dict[str, Any]]:
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


class PathRouter:
    def __init__(self, route_table: Iterable[dict[str, Any]]):
        self.rules = build_rules(route_table)
        self.last_reload = 0.0
        self.lock = Lock()

    @property
    def route_table(self) -> list[dict[str, Any]]:
        return [rule.to_dict() for rule in self.rules]

    def match(self, path: str) -> tuple[Optional[RouteRule], Optional[str]]:
        """Pick the most specific rule for ``path`` and return it with the upstream path."""
        for rule in self.rules:
            if rule.matches(path):
                return rule, rule.rewrite(path)
        return None, None

    async def update_route_table(self, new_routes: Iterable[dict[str, Any]]):
        await self.swap_rules(build_rules(new_routes))

    async def swap_rules(self, rules: tuple[RouteRule, ...]):
        async with self.lock:
            self.rules = rules
            self.last_reload = time.time()
