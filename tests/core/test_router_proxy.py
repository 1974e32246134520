import re
import json
import pytest
import httpx
from httpx import ASGITransport
from asgi_lifespan import LifespanManager
from starlette.responses import JSONResponse, Response

from edge.config.routes import API, FRONTEND
from edge.core.trace import RequestIdMiddleware
from edge.core.upstreams import UpstreamResolver, UpstreamTarget
from tests.fixtures.mock_backends import (
    API_HOST,
    FRONTEND_HOST,
    FRONTEND_PORT,
    ORIGINS,
    UpstreamDispatch,
    build_edge_router,
    echo_backend,
    fake_resolve,
)

EDGE_URL = "https://edge.test"


@pytest.mark.anyio
async def test_api_request_is_forwarded_with_prefix_stripped():
    network = UpstreamDispatch()
    app = build_edge_router(network)

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/api/sessions/42")

    assert res.status_code == 200
    data = res.json()
    assert data["method"] == "GET"
    assert data["path"] == "/sessions/42"

    forwarded = data["headers"]
    assert re.fullmatch(r"[0-9a-f]{32}", forwarded["x-request-id"])
    assert forwarded["host"] == "edge.test"
    assert forwarded["x-forwarded-host"] == "edge.test"
    assert forwarded["x-forwarded-proto"] == "https"
    assert forwarded["x-forwarded-port"] == "443"
    assert forwarded["x-real-ip"] == "127.0.0.1"
    assert forwarded["x-forwarded-for"] == "127.0.0.1"

    assert res.headers["access-control-allow-credentials"] == "true"
    assert res.headers["access-control-allow-origin"] == ORIGINS[0]
    assert network.calls == [("api.internal", "GET", "/sessions/42")]


@pytest.mark.anyio
async def test_query_string_and_body_are_forwarded():
    app = build_edge_router()

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.post("/api/actions?status=open", json={"body": "Draft agenda"})

    data = res.json()
    assert data["method"] == "POST"
    assert data["path"] == "/actions"
    assert data["query"] == "status=open"
    assert json.loads(data["body"]) == {"body": "Draft agenda"}


@pytest.mark.anyio
async def test_existing_request_id_is_passed_through():
    app = RequestIdMiddleware(build_edge_router())

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/api/goals", headers={"X-Request-ID": "abc-123"})

    assert res.json()["headers"]["x-request-id"] == "abc-123"
    assert res.headers["x-request-id"] == "abc-123"


@pytest.mark.anyio
async def test_each_request_gets_its_own_generated_id():
    app = RequestIdMiddleware(build_edge_router())

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            first = await client.get("/api/goals")
            second = await client.get("/api/goals")

    first_id = first.json()["headers"]["x-request-id"]
    second_id = second.json()["headers"]["x-request-id"]
    assert first_id and second_id and first_id != second_id
    assert first.headers["x-request-id"] == first_id


@pytest.mark.anyio
async def test_frontend_requests_keep_path_and_skip_cors():
    network = UpstreamDispatch()
    app = build_edge_router(network)

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/coaching-sessions/7", headers={"Origin": ORIGINS[0]})

    assert res.status_code == 200
    assert res.text == "frontend page /coaching-sessions/7"
    assert "access-control-allow-origin" not in res.headers
    assert "access-control-allow-credentials" not in res.headers
    assert network.calls == [("web.internal", "GET", "/coaching-sessions/7")]


@pytest.mark.anyio
async def test_known_origin_is_echoed_on_api_responses():
    app = build_edge_router()

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/api/users/me", headers={"Origin": ORIGINS[1]})

    assert res.headers["access-control-allow-origin"] == ORIGINS[1]
    assert "Origin" in res.headers.get_list("vary")


async def cookie_backend(scope, receive, send):
    response = Response("ok", headers={
        "Access-Control-Allow-Origin": "*",
        "X-Upstream": "api",
    })
    response.set_cookie("id", "session-1")
    response.set_cookie("csrf", "token-1")
    await response(scope, receive, send)


@pytest.mark.anyio
async def test_upstream_headers_survive_and_cors_is_not_duplicated():
    app = build_edge_router(UpstreamDispatch(api=cookie_backend))

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/api/login")

    assert res.text == "ok"
    assert res.headers["x-upstream"] == "api"
    assert len(res.headers.get_list("set-cookie")) == 2
    assert res.headers.get_list("access-control-allow-origin") == [ORIGINS[0]]


@pytest.mark.anyio
async def test_hop_by_hop_headers_do_not_reach_upstream():
    app = build_edge_router(UpstreamDispatch(api=echo_backend))

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/api/me", headers={
                "X-Custom": "my-value",
                "Upgrade": "websocket",
                "Keep-Alive": "timeout=5",
            })

    forwarded = res.json()["headers"]
    assert forwarded["x-custom"] == "my-value"
    assert "upgrade" not in forwarded
    assert "keep-alive" not in forwarded


async def raw_path_backend(scope, receive, send):
    await JSONResponse({
        "path": scope["path"],
        "raw_path": scope["raw_path"].split(b"?", 1)[0].decode(),
        "query": scope["query_string"].decode(),
    })(scope, receive, send)


@pytest.mark.anyio
@pytest.mark.parametrize("requested, raw_path, path", [
    ("/api/files/report%3Fv%3D1", "/files/report%3Fv%3D1", "/files/report?v=1"),
    ("/api/notes/a%23b", "/notes/a%23b", "/notes/a#b"),
    ("/api/files/a%2Fb", "/files/a%2Fb", "/files/a/b"),
])
async def test_percent_encoded_paths_reach_upstream_unchanged(requested, raw_path, path):
    network = UpstreamDispatch(api=raw_path_backend)
    app = build_edge_router(network)

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get(requested)

    assert res.status_code == 200
    assert res.json() == {"path": path, "raw_path": raw_path, "query": ""}


@pytest.mark.anyio
async def test_encoded_path_keeps_its_real_query():
    app = build_edge_router(UpstreamDispatch(api=raw_path_backend))

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/api/files/report%3Fv%3D1?page=2")

    assert res.json()["raw_path"] == "/files/report%3Fv%3D1"
    assert res.json()["query"] == "page=2"


@pytest.mark.anyio
async def test_non_ascii_header_bytes_are_forwarded_and_echoed():
    app = RequestIdMiddleware(build_edge_router())

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/api/profile", headers={
                "X-Client-Name": b"caf\xe9",
                "X-Request-ID": b"req-caf\xe9",
            })

    assert res.status_code == 200
    forwarded = res.json()["headers"]
    assert forwarded["x-client-name"] == "caf\xe9"
    assert forwarded["x-request-id"] == "req-caf\xe9"
    assert [v for k, v in res.headers.raw if k.lower() == b"x-request-id"] == [b"req-caf\xe9"]


async def latin1_header_backend(scope, receive, send):
    response = Response("ok")
    response.raw_headers.append((b"x-greeting", b"ol\xe1"))
    await response(scope, receive, send)


@pytest.mark.anyio
async def test_non_ascii_response_header_bytes_are_returned_unchanged():
    app = build_edge_router(UpstreamDispatch(frontend=latin1_header_backend))

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as client:
            res = await client.get("/welcome")

    assert [v for k, v in res.headers.raw if k.lower() == b"x-greeting"] == [b"ol\xe1"]


@pytest.mark.anyio
async def test_https_upstream_dialled_by_address_keeps_server_name_for_tls():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.scheme, request.url.host, request.extensions.get("sni_hostname")))
        return httpx.Response(200, text="ok")

    upstreams = UpstreamResolver(
        {
            API: UpstreamTarget.parse(API, f"https://{API_HOST}:4443"),
            FRONTEND: UpstreamTarget.parse(FRONTEND, f"{FRONTEND_HOST}:{FRONTEND_PORT}"),
        },
        ttl=0,
        resolve=fake_resolve,
    )
    await upstreams.refresh()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    app = build_edge_router(client=client, upstreams=upstreams)

    async with LifespanManager(app):
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url=EDGE_URL) as edge:
            await edge.get("/api/me")
            await edge.get("/")

    assert seen == [
        ("https", "10.0.0.10", API_HOST),
        ("http", "10.0.0.20", None),
    ]
