import os
import signal
import asyncio
import logging
import contextlib
import uvicorn
from redis import asyncio as redis
from edge.config.settings import load_settings
from edge.config.routes import ROUTE_TABLE
from edge.core.gateway_router import EdgeRouter
from edge.core.routing_table import load_route_file
from edge.core.trace import RequestIdMiddleware
from edge.core.logging_setup import configure_logging
from edge.core.admin_router import AdminRouter
from edge.core.admin_mount import AdminMount

# Load environment variables from .env file
settings = load_settings()
configure_logging(settings.log_level)
logger = logging.getLogger("edge")

route_table = load_route_file(settings.routes_file) if settings.routes_file else ROUTE_TABLE

# Base edge router
edge_router = EdgeRouter.from_settings(settings, route_table=route_table)
edge_app = RequestIdMiddleware(edge_router)

if settings.admin_enabled:
    redis_client = None
    if settings.redis_url:
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        edge_router.add_cleanup_callback(redis_client.aclose)
    # Admin gets direct access to the unwrapped EdgeRouter instance
    app = AdminMount(AdminRouter(edge_router, redis=redis_client), edge_app)
else:
    app = edge_app


class FollowerServer(uvicorn.Server):
    """Plaintext listener. Signals are left to the TLS listener that owns it."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


class LeaderServer(uvicorn.Server):
    def __init__(self, config: uvicorn.Config, followers: list[uvicorn.Server]):
        super().__init__(config)
        self.followers = followers

    def handle_exit(self, sig, frame) -> None:
        for follower in self.followers:
            follower.force_exit = follower.should_exit
            follower.should_exit = True
        super().handle_exit(sig, frame)


def build_servers() -> tuple[uvicorn.Server, ...]:
    common = dict(host="0.0.0.0", proxy_headers=False, server_header=False,
                  log_config=None)
    if not (settings.ssl_certfile and settings.ssl_keyfile):
        logger.warning("No TLS certificate configured, serving plaintext listener only")
        return (uvicorn.Server(uvicorn.Config(app, port=settings.http_port, **common)),)

    # lifespan runs once, on the TLS listener
    follower = FollowerServer(
        uvicorn.Config(app, port=settings.http_port, lifespan="off", **common)
    )
    https_config = uvicorn.Config(
        app,
        port=settings.https_port,
        ssl_certfile=settings.ssl_certfile,
        ssl_keyfile=settings.ssl_keyfile,
        **common,
    )
    return LeaderServer(https_config, [follower]), follower


async def reload(servers: tuple[uvicorn.Server, ...]):
    logger.info("SIGHUP received, reloading certificates, routes and upstreams")
    try:
        for server in servers:
            ssl_context = server.config.ssl if server.config.loaded else None
            if ssl_context is not None:
                ssl_context.load_cert_chain(server.config.ssl_certfile, server.config.ssl_keyfile)
                logger.info("TLS certificate chain reloaded")
        if settings.routes_file:
            await edge_router.reload_routes(load_route_file(settings.routes_file))
        await edge_router.upstreams.refresh()
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.error(f"Reload failed, keeping previous configuration: {e!r}")


# running reloads, held so the loop does not drop them mid-flight
reload_tasks: set[asyncio.Task] = set()


def schedule_reload(servers: tuple[uvicorn.Server, ...]) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(reload(servers))
    reload_tasks.add(task)
    task.add_done_callback(reload_tasks.discard)
    return task


async def serve():
    servers = build_servers()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGHUP, schedule_reload, servers)

    with open(settings.pid_file, "w", encoding="utf-8") as fh:
        fh.write(str(os.getpid()))
    try:
        await asyncio.gather(*(server.serve() for server in servers))
    finally:
        loop.remove_signal_handler(signal.SIGHUP)
        with contextlib.suppress(FileNotFoundError):
            os.remove(settings.pid_file)


def main():
    asyncio.run(serve())


if __name__ == "__main__":
    main()
