# tests/test_rabbitmq_monitor.py
"""
RabbitMQQueueMonitor tests: queue mapping against a path -> payload table, and
status / transport error handling against a live aiohttp management API double.
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from queuewarden.config import BrokerSettings
from queuewarden.errors import BrokerError
from queuewarden.queue.rabbitmq_monitor import RabbitMQQueueMonitor

QUEUES = [
    {"name": "orders.in", "messages": 7, "messages_ready": 5, "consumers": 2},
    {"name": "amq.gen-abc", "messages": 1, "consumers": 1},
    {"name": "billing.in", "messages": 0, "consumers": 0},
    {"name": "internal.audit", "messages": 3},
]


class FakeManagementApi:
    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.paths = []
        self.error = None

    async def __call__(self, path):
        self.paths.append(path)
        if self.error is not None:
            raise self.error
        return self.routes.get(path)


@pytest.fixture
def api():
    return FakeManagementApi({
        "/api/overview": {"cluster_name": "rabbit@test", "rabbitmq_version": "3.13.0"},
        "/api/queues/%2F": QUEUES,
        "/api/queues/%2F/orders.in": QUEUES[0],
    })


@pytest.fixture
def monitor(api, monkeypatch):
    m = RabbitMQQueueMonitor(BrokerSettings())
    m._connected = True
    monkeypatch.setattr(m, "_get_json", api)
    return m


@pytest.mark.asyncio
async def test_list_queues_maps_total_messages_and_skips_system_queues(monitor):
    queues = {q.name: q for q in await monitor.list_queues()}
    assert set(queues) == {"orders.in", "billing.in", "internal.audit"}
    assert queues["orders.in"].pending_count == 7
    assert queues["orders.in"].consumer_count == 2
    assert queues["internal.audit"].consumer_count == 0


@pytest.mark.asyncio
async def test_custom_system_prefixes(api, monkeypatch):
    m = RabbitMQQueueMonitor(BrokerSettings(system_queue_prefixes=["amq.", "internal."]))
    m._connected = True
    monkeypatch.setattr(m, "_get_json", api)
    names = [q.name for q in await m.list_queues()]
    assert names == ["orders.in", "billing.in"]


@pytest.mark.asyncio
async def test_vhost_is_url_quoted(api, monkeypatch):
    m = RabbitMQQueueMonitor(BrokerSettings(vhost="prod/eu"))
    m._connected = True
    monkeypatch.setattr(m, "_get_json", api)
    await m.list_queues()
    assert api.paths == ["/api/queues/prod%2Feu"]


@pytest.mark.asyncio
async def test_list_error_marks_disconnected_and_propagates(monitor, api):
    api.error = BrokerError("GET /api/queues/%2F failed status=500")
    with pytest.raises(BrokerError):
        await monitor.list_queues()
    assert not monitor.is_connected


@pytest.mark.asyncio
async def test_list_reconnects_when_disconnected(monitor, api):
    monitor._connected = False
    try:
        queues = await monitor.list_queues()
        assert monitor.is_connected
        assert api.paths == ["/api/overview", "/api/queues/%2F"]
        assert len(queues) == 3
    finally:
        await monitor.close()


@pytest.mark.asyncio
async def test_consumer_count(monitor):
    assert await monitor.consumer_count("orders.in") == 2
    # unknown queue -> 404 -> None
    assert await monitor.consumer_count("missing") == 0


@pytest.mark.asyncio
async def test_consumer_count_is_zero_on_error(monitor, api):
    api.error = BrokerError("boom")
    assert await monitor.consumer_count("orders.in") == 0
    # a single failed lookup does not flip the connection state
    assert monitor.is_connected


@pytest.mark.asyncio
async def test_initialize_probes_overview(api, monkeypatch):
    m = RabbitMQQueueMonitor(BrokerSettings())
    monkeypatch.setattr(m, "_get_json", api)
    try:
        await m.initialize()
        assert m.is_connected
        assert api.paths == ["/api/overview"]
        # already connected: no second probe
        await m.initialize()
        assert api.paths == ["/api/overview"]
    finally:
        await m.close()
    assert not m.is_connected


@pytest.mark.asyncio
async def test_initialize_failure_raises(api, monkeypatch):
    m = RabbitMQQueueMonitor(BrokerSettings())
    api.error = BrokerError("connection refused")
    monkeypatch.setattr(m, "_get_json", api)
    try:
        with pytest.raises(BrokerError):
            await m.initialize()
        assert not m.is_connected
    finally:
        await m.close()


# -----------------------------------------------------------------------------
# Over HTTP: a local aiohttp server standing in for the management API
# -----------------------------------------------------------------------------
@pytest.fixture
async def management_server():
    state = {"queues_status": 200, "queues_body": None, "auth": []}

    async def overview(request):
        state["auth"].append(request.headers.get("Authorization"))
        return web.json_response({"cluster_name": "rabbit@test", "rabbitmq_version": "3.13.0"})

    async def queues(request):
        if state["queues_body"] is not None:
            return web.Response(text=state["queues_body"], content_type="application/json")
        if state["queues_status"] != 200:
            return web.json_response({"error": "internal_error"}, status=state["queues_status"])
        return web.json_response(QUEUES)

    async def queue(request):
        for q in QUEUES:
            if q["name"] == request.match_info["name"]:
                return web.json_response(q)
        return web.json_response({"error": "Object Not Found", "reason": "Not Found"}, status=404)

    app = web.Application()
    app.router.add_get("/api/overview", overview)
    app.router.add_get("/api/queues/prod", queues)
    app.router.add_get("/api/queues/prod/{name}", queue)
    server = TestServer(app)
    await server.start_server()
    yield server, state
    await server.close()


@pytest.fixture
async def live_monitor(management_server):
    server, _ = management_server
    m = RabbitMQQueueMonitor(BrokerSettings(management_url=str(server.make_url("/")), vhost="prod"))
    yield m
    await m.close()


@pytest.mark.asyncio
async def test_http_list_and_consumer_count(live_monitor, management_server):
    _, state = management_server
    await live_monitor.initialize()

    names = [q.name for q in await live_monitor.list_queues()]
    assert names == ["orders.in", "billing.in", "internal.audit"]
    assert await live_monitor.consumer_count("orders.in") == 2
    assert state["auth"][0].startswith("Basic ")


@pytest.mark.asyncio
async def test_http_missing_queue_counts_zero_consumers(live_monitor):
    await live_monitor.initialize()
    assert await live_monitor._get_json("/api/queues/prod/missing") is None
    assert await live_monitor.consumer_count("missing") == 0
    assert live_monitor.is_connected


@pytest.mark.asyncio
async def test_http_error_status_raises_and_disconnects(live_monitor, management_server):
    _, state = management_server
    await live_monitor.initialize()
    state["queues_status"] = 500

    with pytest.raises(BrokerError, match="status=500"):
        await live_monitor.list_queues()
    assert not live_monitor.is_connected


@pytest.mark.asyncio
async def test_http_malformed_json_raises_broker_error(live_monitor, management_server):
    _, state = management_server
    await live_monitor.initialize()
    state["queues_body"] = "{not json"

    with pytest.raises(BrokerError):
        await live_monitor.list_queues()
    assert not live_monitor.is_connected


@pytest.mark.asyncio
async def test_http_connection_refused_is_broker_error(management_server):
    server, _ = management_server
    url = str(server.make_url("/"))
    await server.close()

    m = RabbitMQQueueMonitor(BrokerSettings(management_url=url, request_timeout_seconds=2))
    try:
        with pytest.raises(BrokerError):
            await m.initialize()
        assert not m.is_connected
    finally:
        await m.close()
