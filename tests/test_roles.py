"""Tests for the echo responder and conversation initiator roles."""

import asyncio
import string

from wsconform.events import EventBus, EventType, Side
from wsconform.roles import conversation_initiator, echo_responder, random_printable
from wsconform.transport import Connection


def test_random_printable():
    for length in (0, 1, 126, 65536):
        text = random_printable(length)
        assert len(text) == length
        assert len(text.encode()) == length
        assert set(text) <= set(string.ascii_letters + string.digits)


# ---------------------------------------------------------------------------
# Echo responder
# ---------------------------------------------------------------------------


def test_echo_responder_echoes_one_message(fake_ws, event_bus):
    ws = fake_ws(incoming=["hello", "second"])
    conn = Connection(ws, Side.SERVER)

    assert asyncio.run(echo_responder(conn, event_bus)) is True

    # One round only: the second message is never read
    assert ws.sent == ["hello"]
    assert not ws.closed
    passed = event_bus.events(EventType.ROUND_PASSED)
    assert len(passed) == 1
    assert passed[0].length == 5
    assert passed[0].side == Side.SERVER


def test_echo_responder_preserves_binary(fake_ws, event_bus):
    ws = fake_ws(incoming=[b"\x00\xff"])
    conn = Connection(ws, Side.CLIENT)

    asyncio.run(echo_responder(conn, event_bus))

    assert ws.sent == [b"\x00\xff"]


def test_echo_responder_read_failure_skips_write(fake_ws, event_bus):
    ws = fake_ws(incoming=[])
    conn = Connection(ws, Side.CLIENT)

    assert asyncio.run(echo_responder(conn, event_bus)) is False

    assert ws.sent == []
    assert [e.event_type for e in event_bus.failures()] == [EventType.READ_FAILED]


def test_echo_responder_write_failure(fake_ws, event_bus):
    ws = fake_ws(incoming=["hello"], fail_send=True)
    conn = Connection(ws, Side.CLIENT)

    assert asyncio.run(echo_responder(conn, event_bus)) is False

    failures = event_bus.failures()
    assert [e.event_type for e in failures] == [EventType.WRITE_FAILED]
    assert failures[0].length == 5


# ---------------------------------------------------------------------------
# Conversation initiator
# ---------------------------------------------------------------------------


def test_initiator_exact_echo_all_lengths(fake_ws, event_bus):
    lengths = [0, 10, 125, 126, 65535, 65536]
    ws = fake_ws(echo=True)
    conn = Connection(ws, Side.CLIENT)

    result = asyncio.run(conversation_initiator(conn, lengths, event_bus=event_bus))

    assert result.ok
    assert result.passed == lengths
    assert [len(m) for m in ws.sent] == lengths
    assert ws.pings == 1
    assert not ws.closed
    assert event_bus.failures() == []
    assert len(event_bus.events(EventType.PING_SENT)) == 1


def test_initiator_detects_mismatch(fake_ws, event_bus):
    ws = fake_ws(echo=True, transform=lambda s: s[:-1] + "!" if s else s)
    conn = Connection(ws, Side.CLIENT)

    result = asyncio.run(conversation_initiator(conn, [0, 10], event_bus=event_bus))

    assert result.passed == [0]
    assert result.failed == [10]
    assert not result.aborted
    mismatch = event_bus.events(EventType.ECHO_MISMATCH)
    assert len(mismatch) == 1
    assert mismatch[0].data["informational"] is False


def test_initiator_server_side_failures_are_informational(fake_ws, event_bus):
    ws = fake_ws(incoming=[])
    conn = Connection(ws, Side.SERVER)

    result = asyncio.run(conversation_initiator(conn, [10, 20], event_bus=event_bus))

    # Read failures don't abort: every length is still attempted
    assert result.failed == [10, 20]
    assert not result.aborted
    failures = event_bus.failures(Side.SERVER)
    assert [e.event_type for e in failures] == [EventType.READ_FAILED] * 2
    assert all(e.data["informational"] for e in failures)


def test_initiator_write_failure_aborts(fake_ws, event_bus):
    ws = fake_ws(echo=True, fail_send=True)
    conn = Connection(ws, Side.CLIENT)

    result = asyncio.run(conversation_initiator(conn, [10, 20, 30], event_bus=event_bus))

    assert result.aborted
    assert result.failed == [10]
    assert [e.event_type for e in event_bus.failures()] == [EventType.WRITE_FAILED]


def test_initiator_close_before_exit(fake_ws, event_bus):
    ws = fake_ws(echo=True)
    conn = Connection(ws, Side.CLIENT)

    result = asyncio.run(
        conversation_initiator(conn, [10, 20], close_before_exit=True, event_bus=event_bus)
    )

    assert ws.close_codes == [1000]
    assert result.passed == [10]
    assert result.failed == [20]
    assert result.aborted
    assert len(event_bus.events(EventType.CONNECTION_CLOSED)) == 1


def test_initiator_ping_failure_does_not_block_round_trip(fake_ws, event_bus):
    ws = fake_ws(echo=True, fail_ping=True)
    conn = Connection(ws, Side.CLIENT)

    result = asyncio.run(conversation_initiator(conn, [10], event_bus=event_bus))

    assert result.ok
    assert len(event_bus.events(EventType.PING_FAILED)) == 1


def test_roles_work_without_event_bus(fake_ws):
    ws = fake_ws(echo=True)
    conn = Connection(ws, Side.CLIENT)

    result = asyncio.run(conversation_initiator(conn, [3]))
    assert result.passed == [3]


def test_initiator_and_responder_talk_to_each_other():
    """Both roles on one event loop, joined by in-memory queues."""

    class Pipe:
        def __init__(self, inbox, outbox):
            self.id = "pipe"
            self.inbox = inbox
            self.outbox = outbox

        async def recv(self):
            return await self.inbox.get()

        async def send(self, data):
            await self.outbox.put(data)

        async def ping(self):
            pass

        async def close(self, code=1000, reason=""):
            pass

    async def run():
        a_to_b, b_to_a = asyncio.Queue(), asyncio.Queue()
        bus = EventBus()
        client = Connection(Pipe(b_to_a, a_to_b), Side.CLIENT)
        server = Connection(Pipe(a_to_b, b_to_a), Side.SERVER)

        responder = asyncio.create_task(echo_responder(server, bus))
        result = await conversation_initiator(client, [126], event_bus=bus)
        await responder
        return result, bus

    result, bus = asyncio.run(run())
    assert result.passed == [126]
    assert len(bus.events(EventType.ROUND_PASSED, Side.SERVER)) == 1
    assert len(bus.events(EventType.ROUND_PASSED, Side.CLIENT)) == 1
