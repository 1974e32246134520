import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _split(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    api_upstream: str = "rust-app:4000"
    frontend_upstream: str = "nextjs-app:3000"

    allowed_origins: tuple[str, ...] = ("https://refactor.engineer",)
    allowed_methods: str = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
    allowed_headers: str = (
        "Authorization, Content-Type, Accept, Origin, X-Requested-With, "
        "X-Request-ID, X-Version"
    )
    cors_max_age: int = 86400

    connect_timeout: float = 5.0
    send_timeout: float = 60.0
    read_timeout: float = 60.0
    dns_ttl: float = 30.0

    acme_webroot: str = "/var/www/html"
    http_port: int = 80
    https_port: int = 443
    ssl_certfile: Optional[str] = None
    ssl_keyfile: Optional[str] = None
    pid_file: str = "/run/edge-router.pid"

    admin_enabled: bool = False
    redis_url: Optional[str] = None
    routes_file: Optional[str] = None
    log_level: str = "INFO"

    upstream_scheme: str = "http"


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build settings from the process environment (and a .env file, if any)."""
    load_dotenv(env_file)
    env = os.environ
    defaults = Settings()

    return Settings(
        api_upstream=env.get("EDGE_API_UPSTREAM", defaults.api_upstream),
        frontend_upstream=env.get("EDGE_FRONTEND_UPSTREAM", defaults.frontend_upstream),
        allowed_origins=_split(env["EDGE_ALLOWED_ORIGINS"])
        if env.get("EDGE_ALLOWED_ORIGINS") else defaults.allowed_origins,
        allowed_methods=env.get("EDGE_ALLOWED_METHODS", defaults.allowed_methods),
        allowed_headers=env.get("EDGE_ALLOWED_HEADERS", defaults.allowed_headers),
        cors_max_age=int(env.get("EDGE_CORS_MAX_AGE", defaults.cors_max_age)),
        connect_timeout=float(env.get("EDGE_CONNECT_TIMEOUT", defaults.connect_timeout)),
        send_timeout=float(env.get("EDGE_SEND_TIMEOUT", defaults.send_timeout)),
        read_timeout=float(env.get("EDGE_READ_TIMEOUT", defaults.read_timeout)),
        dns_ttl=float(env.get("EDGE_DNS_TTL", defaults.dns_ttl)),
        acme_webroot=env.get("EDGE_ACME_WEBROOT", defaults.acme_webroot),
        http_port=int(env.get("EDGE_HTTP_PORT", defaults.http_port)),
        https_port=int(env.get("EDGE_HTTPS_PORT", defaults.https_port)),
        ssl_certfile=env.get("EDGE_SSL_CERTFILE") or None,
        ssl_keyfile=env.get("EDGE_SSL_KEYFILE") or None,
        pid_file=env.get("EDGE_PID_FILE", defaults.pid_file),
        admin_enabled=_flag(env.get("EDGE_ADMIN_ENABLED", "false")),
        redis_url=env.get("REDIS_URL") or None,
        routes_file=env.get("EDGE_ROUTES_FILE") or None,
        log_level=env.get("EDGE_LOG_LEVEL", defaults.log_level).upper(),
        upstream_scheme=env.get("EDGE_UPSTREAM_SCHEME", defaults.upstream_scheme),
    )
