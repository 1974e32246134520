import time
import json
import logging
from redis.asyncio import Redis
from redis.exceptions import RedisError
from typing import Optional
from starlette.types import Scope, Receive, Send
from starlette.responses import PlainTextResponse, JSONResponse, Response
from edge.core.metrics import render_prometheus_metrics
from edge.core.gateway_router import EdgeRouter

logger = logging.getLogger(__name__)

ROUTE_CONFIG_KEY = "route_config"
RELOAD_INTERVAL = 10


class AdminRouter:
    def __init__(self, router: EdgeRouter, redis: Optional[Redis] = None) -> None:
        self.router = router
        self.redis = redis

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        path = scope.get("path", "")
        if path == "/__routes":
            await self.routes(scope, receive, send)
        elif path == "/__upstreams":
            await self.upstreams(scope, receive, send)
        elif path == "/__metrics":
            await self.metrics(scope, receive, send)
        elif path == "/__reload" and scope.get("method", "") == "POST":
            await self.reload_config(scope, receive, send)
        else:
            await PlainTextResponse("Not Found", status_code=404)(scope, receive, send)

    async def routes(self, scope: Scope, receive: Receive, send: Send) -> None:
        await JSONResponse(self.router.path_router.route_table)(scope, receive, send)

    async def upstreams(self, scope: Scope, receive: Receive, send: Send) -> None:
        await JSONResponse(self.router.upstreams.to_dict())(scope, receive, send)

    async def metrics(self, scope: Scope, receive: Receive, send: Send) -> None:
        data, content_type = render_prometheus_metrics()
        await Response(content=data, media_type=content_type)(scope, receive, send)

    async def reload_config(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self.redis is None:
            return await JSONResponse({"error": "No route config store configured"},
                                      status_code=503)(scope, receive, send)

        if time.time() - self.router.path_router.last_reload < RELOAD_INTERVAL:
            return await JSONResponse({"error": "Reload too frequent"},
                                      status_code=429)(scope, receive, send)

        try:
            raw_json = await self.redis.get(ROUTE_CONFIG_KEY)
            if raw_json is None:
                return await JSONResponse({"error": f"Key {ROUTE_CONFIG_KEY!r} not set"},
                                          status_code=404)(scope, receive, send)
            prefixes = await self.router.reload_routes(json.loads(raw_json))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Reload rejected: {e}")
            return await JSONResponse({"error": f"Invalid route config: {e}"},
                                      status_code=400)(scope, receive, send)
        except RedisError as e:
            logger.error(f"Reload failed: {e}")
            return await JSONResponse({"error": "Reload failed"},
                                      status_code=500)(scope, receive, send)

        await self.router.upstreams.refresh()
        return await JSONResponse({"status": "Reloaded", "routes": prefixes})(scope, receive, send)
