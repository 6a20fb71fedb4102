"""Tests for request routing: plain HTTP responder and upgrade gatekeeper."""

import asyncio
from http import HTTPStatus
from types import SimpleNamespace

from websockets.datastructures import Headers

from wsconform.config import SERVER_STARTS_SUBPROTOCOL
from wsconform.events import EventType, Side
from wsconform.server.gatekeeper import (
    PLAIN_BODY,
    Gatekeeper,
    UpgradeRequest,
    is_upgrade_request,
    make_http_responder,
    select_subprotocol,
)


class FakeServerConnection:
    def respond(self, status, text):
        return (status, text)


def _request(path="/", **headers):
    return SimpleNamespace(path=path, headers=Headers(headers))


def test_is_upgrade_request():
    assert is_upgrade_request(_request(Upgrade="websocket", Connection="Upgrade"))
    assert is_upgrade_request(_request(Upgrade="WebSocket"))
    assert not is_upgrade_request(_request())
    assert not is_upgrade_request(_request(Upgrade="h2c"))


def test_http_responder_lets_upgrades_through(event_bus):
    responder = make_http_responder(event_bus)

    assert responder(FakeServerConnection(), _request(Upgrade="websocket")) is None
    assert event_bus.history == []


def test_http_responder_answers_any_path_with_200(event_bus):
    responder = make_http_responder(event_bus)

    for path in ("/", "/index.html", "/api/anything?x=1"):
        status, body = responder(FakeServerConnection(), _request(path))
        assert status == HTTPStatus.OK
        assert body == PLAIN_BODY

    assert len(event_bus.events(EventType.HTTP_RESPONSE)) == 3


def test_select_subprotocol():
    assert select_subprotocol(None, [SERVER_STARTS_SUBPROTOCOL]) == SERVER_STARTS_SUBPROTOCOL
    assert select_subprotocol(None, ["chat", SERVER_STARTS_SUBPROTOCOL]) == SERVER_STARTS_SUBPROTOCOL
    assert select_subprotocol(None, ["chat"]) is None
    assert select_subprotocol(None, []) is None


def test_upgrade_request_from_connection(fake_ws):
    ws = fake_ws(
        path="/chat",
        headers={"Origin": "http://example.com"},
        subprotocol=SERVER_STARTS_SUBPROTOCOL,
    )

    request = UpgradeRequest.from_connection(ws)

    assert request == UpgradeRequest(
        origin="http://example.com",
        target="/chat",
        subprotocol=SERVER_STARTS_SUBPROTOCOL,
    )


def test_gatekeeper_echoes_without_subprotocol(fake_ws, event_bus):
    ws = fake_ws(incoming=["abc"])
    gatekeeper = Gatekeeper(event_bus)

    asyncio.run(gatekeeper(ws))

    assert ws.sent == ["abc"]
    assert ws.pings == 0
    selected = event_bus.events(EventType.ROLE_SELECTED)
    assert [e.data["role"] for e in selected] == ["echo"]


def test_gatekeeper_initiates_with_sentinel(fake_ws, event_bus):
    ws = fake_ws(echo=True, subprotocol=SERVER_STARTS_SUBPROTOCOL)
    gatekeeper = Gatekeeper(event_bus, initiator_lengths=(0, 126))

    asyncio.run(gatekeeper(ws))

    assert ws.pings == 1
    assert [len(m) for m in ws.sent] == [0, 126]
    assert not ws.closed
    assert [e.data["role"] for e in event_bus.events(EventType.ROLE_SELECTED)] == ["initiator"]
    passed = event_bus.events(EventType.ROUND_PASSED, Side.SERVER)
    assert [e.length for e in passed] == [0, 126]


def test_gatekeeper_flags_origin_and_target(fake_ws, event_bus):
    ws = fake_ws(incoming=["x"], path="/elsewhere", headers={"Origin": "http://browser"})

    asyncio.run(Gatekeeper(event_bus)(ws))

    # Anomalies are not fatal: the echo still happens
    assert ws.sent == ["x"]
    assert len(event_bus.events(EventType.ORIGIN_ANOMALY)) == 1
    assert len(event_bus.events(EventType.TARGET_ANOMALY)) == 1


def test_gatekeeper_no_anomaly_for_clean_request(fake_ws, event_bus):
    asyncio.run(Gatekeeper(event_bus)(fake_ws(incoming=["x"])))

    assert event_bus.events(EventType.ORIGIN_ANOMALY) == []
    assert event_bus.events(EventType.TARGET_ANOMALY) == []


def test_gatekeeper_contains_role_exceptions(fake_ws, event_bus):
    ws = fake_ws(incoming=["x"])

    async def broken_recv():
        raise RuntimeError("boom")

    ws.recv = broken_recv

    # Must not raise into the listener
    asyncio.run(Gatekeeper(event_bus)(ws))

    errors = event_bus.events(EventType.ROLE_ERROR)
    assert len(errors) == 1
    assert "boom" in errors[0].data["error"]
    assert errors[0].is_failure


def test_gatekeeper_contains_handshake_inspection_errors(fake_ws, event_bus):
    ws = fake_ws(incoming=["x"])
    ws.request = None

    asyncio.run(Gatekeeper(event_bus)(ws))

    assert ws.sent == []
    assert event_bus.events(EventType.ROLE_SELECTED) == []
    errors = event_bus.events(EventType.ROLE_ERROR)
    assert len(errors) == 1
    assert errors[0].data["role"] == "unselected"
