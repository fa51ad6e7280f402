#!/usr/bin/env python3
# Test Gateway Client
# Usage: python scripts/test_gateway.py   (or: pytest scripts/)

"""
Gateway Client Test Script

Tests:
1. Fresh login (discovery + IDENTIFY)
2. Discovery failure handling
3. Heartbeat on HELLO and on request
4. Sequence tracking and READY handling
5. Resume vs. identify on reconnect
6. Backoff schedule and max-attempts exhaustion
7. Clean close, disconnect idempotence, late discovery after disconnect
8. INVALID_SESSION and RECONNECT opcodes

Uses fake sockets and a fake discovery (no network, no bot token required)
"""

import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from websockets.protocol import State

from botlogin.alerts.notifier import Notifier
from botlogin.connection.errors import DiscoveryError
from botlogin.connection.gateway_client import ConnectionState, GatewayClient
from botlogin.host.token_guard import TokenAccessorGuard
from botlogin.processors.gateway_frames import GatewayFrame
from botlogin.storage.config_store import ConfigStore
from botlogin.utils.logger import setup_logger

# Setup logger
logger = setup_logger("TestGateway", "INFO")

GATEWAY_URL = "wss://gateway.test"

# ============================================================================
# FAKES
# ============================================================================

class FakeSocket:
    """In-memory gateway socket"""

    def __init__(self, url: str):
        self.url = url
        self.sent = []
        self.state = State.OPEN
        self.close_code = None
        self.close_reason = None
        self.close_calls = 0
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str):
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = ""):
        self.close_calls += 1
        if self.state is State.OPEN:
            self.state = State.CLOSED
            self.close_code = code
            self.close_reason = reason
            self._incoming.put_nowait(None)

    def feed(self, frame: dict):
        """Deliver a frame from the server"""
        self._incoming.put_nowait(json.dumps(frame))

    def drop(self, code: int):
        """Server-side close with the given code"""
        self.state = State.CLOSED
        self.close_code = code
        self._incoming.put_nowait(None)

    def ops(self):
        return [frame["op"] for frame in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

class FakeConnector:
    """Replacement for websockets connect()"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sockets = []
        self.attempts = 0

    async def __call__(self, url: str, **kwargs):
        self.attempts += 1
        if self.fail:
            raise OSError("Connection refused")
        sock = FakeSocket(url)
        self.sockets.append(sock)
        return sock

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]

class FakeDiscovery:
    """Replacement for GatewayDiscovery"""

    def __init__(self, url: str = GATEWAY_URL, error: str = None, gate: asyncio.Event = None):
        self.url = url
        self.error = error
        self.gate = gate
        self.tokens = []

    @property
    def calls(self) -> int:
        return len(self.tokens)

    async def fetch_gateway_url(self, token: str) -> str:
        self.tokens.append(token)
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise DiscoveryError(self.error)
        return self.url

class RecordingSleep:
    """Records backoff delays without waiting"""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        await asyncio.sleep(0)

def make_client(token: str = "tok", intents: int = 513, **kwargs):
    store = ConfigStore(initial={"bot_token": token, "intents": intents})
    connector = kwargs.pop("connector", None) or FakeConnector()
    discovery = kwargs.pop("discovery", None) or FakeDiscovery()
    sleep = RecordingSleep()
    client = GatewayClient(
        store,
        notifier=Notifier(),
        discovery=discovery,
        connect_factory=connector,
        sleep=sleep,
        **kwargs
    )
    return client, connector, discovery, sleep

async def until(predicate, spins: int = 1000):
    """Yield to the loop until predicate() is true"""
    for _ in range(spins):
        if predicate():
            return True
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")

async def settle(spins: int = 20):
    for _ in range(spins):
        await asyncio.sleep(0)

def ready_frame(session_id: str = "sess-1", seq: int = 1) -> dict:
    return {
        "op": 0,
        "t": "READY",
        "s": seq,
        "d": {
            "session_id": session_id,
            "user": {"username": "testbot", "discriminator": "0001"},
        },
    }

def notice_messages(client: GatewayClient):
    return [n["message"] for n in client.notifier.recent(50)]

# ============================================================================
# TESTS
# ============================================================================

def test_fresh_login_sends_identify():
    """connect() discovers the URL and identifies with one "Bot " prefix"""
    logger.info("TEST: Fresh login")

    async def scenario():
        for stored in ("abc.def", "Bot abc.def"):
            client, connector, discovery, _ = make_client(token=stored, intents=513)
            assert await client.connect() is True
            assert discovery.calls == 1
            assert connector.latest.url == "wss://gateway.test?v=10&encoding=json"

            identify = connector.latest.sent[0]
            assert identify["op"] == 2
            assert identify["d"]["token"] == "Bot abc.def"
            assert identify["d"]["intents"] == 513
            assert identify["d"]["properties"]["browser"] == "BotLogin"
            assert identify["d"]["compress"] is False
            assert identify["d"]["large_threshold"] == 250
            assert client.get_state() == ConnectionState.IDENTIFYING
            assert client.is_bot_socket_open()
            await client.disconnect()

    asyncio.run(scenario())
    logger.info("✅ Identify frame correct")

def test_discovery_failure_leaves_state_unchanged():
    logger.info("TEST: Discovery failure")

    async def scenario():
        client, connector, _, sleep = make_client(
            discovery=FakeDiscovery(error="401: Unauthorized")
        )
        assert await client.connect() is False
        assert connector.attempts == 0
        assert client.get_state() == ConnectionState.IDLE
        assert client.session.session_id is None
        assert client.session.gateway_url is None
        assert sleep.delays == []
        assert "Connect failed: 401: Unauthorized" in notice_messages(client)

    asyncio.run(scenario())
    logger.info("✅ Discovery error surfaced, no session created")

def test_connect_while_connected_is_rejected():
    async def scenario():
        client, connector, discovery, _ = make_client()
        await client.connect()
        assert await client.connect() is False
        assert discovery.calls == 1
        assert len(connector.sockets) == 1
        assert "Already connected." in notice_messages(client)
        await client.disconnect()

    asyncio.run(scenario())

def test_connect_without_token():
    async def scenario():
        client, connector, discovery, _ = make_client(token="")
        assert await client.connect() is False
        assert discovery.calls == 0
        assert "Please enter a bot token." in notice_messages(client)

    asyncio.run(scenario())

def test_manual_connect_starts_new_session():
    """connect() while old session data is held identifies with a clean sequence"""
    logger.info("TEST: Manual connect during backoff")

    async def scenario():
        client, connector, _, _ = make_client()
        client.session.session_id = "old"
        client.session.sequence = 500
        client.session.gateway_url = "wss://old"

        assert await client.connect() is True
        sock = connector.latest
        assert sock.ops() == [2]
        assert client.session.session_id is None
        assert client.session.sequence is None

        sock.feed(ready_frame(session_id="new", seq=1))
        await until(lambda: client.session.session_id == "new")
        assert client.session.sequence == 1

        sock.feed({"op": 10, "d": {"heartbeat_interval": 45000}})
        await until(lambda: 1 in sock.ops())
        assert sock.sent[-1] == {"op": 1, "d": 1}
        await client.disconnect()

    asyncio.run(scenario())
    logger.info("✅ Fresh identify does not reuse the old sequence")

def test_hello_starts_heartbeat_and_server_request_beats():
    logger.info("TEST: Heartbeat")

    async def scenario():
        client, connector, _, _ = make_client()
        await client.connect()
        sock = connector.latest

        sock.feed({"op": 10, "d": {"heartbeat_interval": 45000}})
        await until(lambda: 1 in sock.ops())
        assert sock.sent[-1] == {"op": 1, "d": None}
        assert client.heartbeat.is_running
        assert client.heartbeat.interval_ms == 45000

        sock.feed(ready_frame(seq=5))
        sock.feed({"op": 1, "d": None})
        await until(lambda: sock.ops().count(1) == 2)
        assert sock.sent[-1] == {"op": 1, "d": 5}

        sock.feed({"op": 11})
        await until(lambda: client.heartbeat.get_stats()["acks_received"] == 1)

        await client.disconnect()
        assert not client.heartbeat.is_running

    asyncio.run(scenario())
    logger.info("✅ Heartbeat immediate + on request")

def test_heartbeat_noop_without_open_socket():
    async def scenario():
        client, _, _, _ = make_client()
        assert await client.send_heartbeat() is False

    asyncio.run(scenario())

def test_sequence_tracking_ignores_null():
    async def scenario():
        client, _, _, _ = make_client()
        await client.handle_frame(GatewayFrame(op=0, t="MESSAGE_CREATE", s=5, d={}))
        await client.handle_frame(GatewayFrame(op=0, t="MESSAGE_CREATE", s=9, d={}))
        await client.handle_frame(GatewayFrame(op=1, s=None))
        assert client.session.sequence == 9

    asyncio.run(scenario())

def test_ready_resets_counter_and_stores_session():
    logger.info("TEST: READY handling")

    async def scenario():
        client, _, _, _ = make_client()
        client.policy.attempts = 4
        await client.handle_frame(GatewayFrame(
            op=0, t="ready", s=1, d={"session_id": "abc", "user": {"username": "testbot", "discriminator": "0001"}}
        ))
        assert client.policy.attempts == 0
        assert client.session.session_id == "abc"
        assert client.get_state() == ConnectionState.CONNECTED
        assert "Connected as testbot#0001" in notice_messages(client)

    asyncio.run(scenario())
    logger.info("✅ READY stores session id, resets counter")

def test_other_events_forwarded():
    async def scenario():
        client, _, _, _ = make_client()
        seen = []
        client.on_any_event(lambda name, data: seen.append((name, data)))
        await client.handle_frame(GatewayFrame(op=0, t="GUILD_CREATE", s=2, d={"id": "1"}))
        await client.handle_frame(GatewayFrame(op=0, t="READY", s=3, d={"session_id": "x"}))
        assert seen == [("GUILD_CREATE", {"id": "1"})]

    asyncio.run(scenario())

def test_reconnect_resumes_known_session():
    logger.info("TEST: Resume")

    async def scenario():
        client, connector, discovery, _ = make_client(token="tok")
        client.session.session_id = "abc"
        client.session.sequence = 42
        client.session.gateway_url = "wss://x"

        assert await client.reconnect(force_identify=False) is True
        sock = connector.latest
        assert sock.url == "wss://x?v=10&encoding=json"
        assert discovery.calls == 0
        assert sock.sent == [
            {"op": 6, "d": {"token": "Bot tok", "session_id": "abc", "seq": 42}}
        ]
        assert 2 not in sock.ops()
        assert client.get_state() == ConnectionState.RESUMING

        sock.feed({"op": 0, "t": "RESUMED", "s": 43, "d": {}})
        await until(lambda: client.get_state() == ConnectionState.CONNECTED)
        assert client.session.sequence == 43
        await client.disconnect()

    asyncio.run(scenario())
    logger.info("✅ Resume frame sent, no identify")

def test_reconnect_without_session_identifies():
    async def scenario():
        client, connector, discovery, _ = make_client(token="Bot tok", intents=7)
        assert await client.reconnect(force_identify=False) is True
        assert discovery.calls == 1
        identify = connector.latest.sent[0]
        assert identify["op"] == 2
        assert identify["d"]["token"] == "Bot tok"
        assert identify["d"]["intents"] == 7
        await client.disconnect()

    asyncio.run(scenario())

def test_reconnect_force_identify_clears_session():
    async def scenario():
        client, connector, discovery, _ = make_client()
        client.session.session_id = "abc"
        client.session.sequence = 42
        client.session.gateway_url = "wss://x"

        await client.reconnect(force_identify=True)
        assert client.session.session_id is None
        assert client.session.sequence is None
        assert discovery.calls == 1
        assert connector.latest.ops() == [2]
        await client.disconnect()

    asyncio.run(scenario())

def test_reconnect_without_token_resets():
    async def scenario():
        client, connector, _, _ = make_client()
        await client.connect()
        client.config_store.set("bot_token", "")
        assert await client.reconnect() is False
        assert client.connection is None
        assert client.get_state() == ConnectionState.IDLE
        assert connector.latest.state is State.CLOSED

    asyncio.run(scenario())

def test_backoff_schedule_and_exhaustion():
    logger.info("TEST: Backoff schedule")

    async def scenario():
        client, connector, _, sleep = make_client()
        await client.connect()

        for attempt in range(1, 6):
            connector.latest.drop(4000)
            await until(lambda: len(connector.sockets) == attempt + 1)

        assert sleep.delays == [2.0, 4.0, 8.0, 16.0, 30.0]
        assert client.policy.attempts == 5

        connector.latest.drop(4000)
        await settle()
        assert len(connector.sockets) == 6
        assert len(sleep.delays) == 5
        assert "Bot disconnected. Max reconnects reached." in notice_messages(client)
        assert client.policy.attempts == 0
        assert client.connection is None
        assert client.get_state() == ConnectionState.IDLE

    asyncio.run(scenario())
    logger.info("✅ 2s, 4s, 8s, 16s, 30s then give up")

def test_socket_open_failure_counts_as_abnormal_close():
    async def scenario():
        client, connector, _, sleep = make_client(connector=FakeConnector(fail=True))
        assert await client.connect() is False
        await until(lambda: "Bot disconnected. Max reconnects reached." in notice_messages(client))
        assert connector.attempts == 6
        assert sleep.delays == [2.0, 4.0, 8.0, 16.0, 30.0]

    asyncio.run(scenario())

def test_ready_between_closes_restarts_backoff():
    async def scenario():
        client, connector, _, sleep = make_client()
        await client.connect()
        connector.latest.drop(1006)
        await until(lambda: len(connector.sockets) == 2)
        connector.latest.drop(1006)
        await until(lambda: len(connector.sockets) == 3)

        connector.latest.feed(ready_frame())
        await until(lambda: client.policy.attempts == 0)

        connector.latest.drop(1006)
        await until(lambda: len(connector.sockets) == 4)
        assert sleep.delays == [2.0, 4.0, 2.0]
        # READY gave a session: the third reconnect resumes
        assert connector.latest.ops() == [6]
        await client.disconnect()

    asyncio.run(scenario())

def test_clean_close_stops():
    async def scenario():
        client, connector, _, sleep = make_client()
        await client.connect()
        connector.latest.feed(ready_frame())
        await until(lambda: client.session.session_id == "sess-1")

        connector.latest.drop(1000)
        await until(lambda: client.connection is None)
        await settle()
        assert sleep.delays == []
        assert len(connector.sockets) == 1
        assert client.session.session_id is None
        assert client.session.sequence is None
        assert client.get_state() == ConnectionState.IDLE

    asyncio.run(scenario())

def test_disconnect_is_idempotent():
    logger.info("TEST: Disconnect idempotence")

    async def scenario():
        client, connector, _, sleep = make_client()
        await client.connect()
        sock = connector.latest
        sock.feed({"op": 10, "d": {"heartbeat_interval": 45000}})
        sock.feed(ready_frame(seq=3))
        await until(lambda: client.session.session_id == "sess-1")

        await client.disconnect()
        first = client.get_status()
        assert sock.close_code == 1000
        assert sock.close_reason == "User disconnected"

        await client.disconnect()
        second = client.get_status()
        await settle()

        assert first == second
        assert sock.close_calls == 1
        assert sleep.delays == []
        assert first["state"] == "idle"
        assert first["connected"] is False
        assert first["has_session"] is False
        assert first["sequence"] is None
        assert first["gateway_url"] is None
        assert first["reconnect_attempts"] == 0
        assert not client.heartbeat.is_running

    asyncio.run(scenario())
    logger.info("✅ Second disconnect is a no-op")

def test_late_discovery_after_disconnect_is_dropped():
    async def scenario():
        gate = asyncio.Event()
        client, connector, _, _ = make_client(discovery=FakeDiscovery(gate=gate))
        connect_task = asyncio.create_task(client.connect())
        await settle()

        await client.disconnect()
        gate.set()
        assert await connect_task is False
        assert connector.attempts == 0
        assert client.connection is None

    asyncio.run(scenario())

def test_invalid_session_resumable_sends_resume():
    async def scenario():
        client, connector, _, _ = make_client()
        await client.connect()
        sock = connector.latest
        sock.feed(ready_frame(session_id="abc", seq=7))
        await until(lambda: client.session.session_id == "abc")

        sock.feed({"op": 9, "d": True})
        await until(lambda: 6 in sock.ops())
        assert sock.sent[-1]["d"] == {"token": "Bot tok", "session_id": "abc", "seq": 7}
        await client.disconnect()

    asyncio.run(scenario())

def test_invalid_session_not_resumable_identifies_fresh():
    logger.info("TEST: INVALID_SESSION false")

    async def scenario():
        client, connector, discovery, _ = make_client()
        await client.connect()
        first = connector.latest
        first.feed(ready_frame(session_id="abc", seq=7))
        await until(lambda: client.session.session_id == "abc")

        first.feed({"op": 9, "d": False})
        await until(lambda: len(connector.sockets) == 2)
        assert first.state is State.CLOSED
        assert discovery.calls == 2
        assert connector.latest.ops() == [2]
        assert client.session.session_id is None
        assert client.session.sequence is None
        await client.disconnect()

    asyncio.run(scenario())
    logger.info("✅ Session cleared, fresh identify")

def test_server_reconnect_request_resumes():
    async def scenario():
        client, connector, discovery, sleep = make_client()
        await client.connect()
        first = connector.latest
        first.feed(ready_frame(session_id="abc", seq=11))
        await until(lambda: client.session.session_id == "abc")

        first.feed({"op": 7, "d": None})
        await until(lambda: len(connector.sockets) == 2)
        await settle()
        assert first.state is State.CLOSED
        assert discovery.calls == 1
        assert connector.latest.url == "wss://gateway.test?v=10&encoding=json"
        assert connector.latest.sent == [
            {"op": 6, "d": {"token": "Bot tok", "session_id": "abc", "seq": 11}}
        ]
        # Closing the superseded socket must not schedule another reconnect
        assert sleep.delays == []
        assert len(connector.sockets) == 2
        await client.disconnect()

    asyncio.run(scenario())

def test_ready_resume_gateway_url_is_used():
    async def scenario():
        client, connector, _, _ = make_client()
        await client.connect()
        frame = ready_frame(session_id="abc", seq=2)
        frame["d"]["resume_gateway_url"] = "wss://resume.gateway.test"
        connector.latest.feed(frame)
        await until(lambda: client.session.session_id == "abc")

        connector.latest.drop(4009)
        await until(lambda: len(connector.sockets) == 2)
        assert connector.latest.url == "wss://resume.gateway.test?v=10&encoding=json"
        await client.disconnect()

    asyncio.run(scenario())

def test_resume_guard_falls_back_to_identify():
    async def scenario():
        client, connector, _, _ = make_client()
        await client.connect()
        sock = connector.latest
        sock.sent.clear()
        assert await client.send_resume() is True
        assert sock.ops() == [2]
        await client.disconnect()

    asyncio.run(scenario())

def test_unknown_opcode_ignored():
    async def scenario():
        client, connector, _, _ = make_client()
        await client.connect()
        sock = connector.latest
        sock.feed({"op": 42, "d": {"x": 1}})
        sock.feed("not json")  # dropped by the parser
        sock.feed({"op": 11})
        await until(lambda: client.heartbeat.get_stats()["acks_received"] == 1)
        assert sock.ops() == [2]
        assert client.is_bot_socket_open()
        await client.disconnect()

    asyncio.run(scenario())

def test_token_guard_follows_socket():
    async def scenario():
        class Host:
            def getToken(self):
                return "user-token"

        host = Host()
        client, _, _, _ = make_client()
        guard = TokenAccessorGuard(client.is_bot_socket_open)
        unpatch = guard.patch(host, "getToken")

        assert host.getToken() == "user-token"
        await client.connect()
        assert host.getToken() is None
        await client.disconnect()
        assert host.getToken() == "user-token"

        unpatch()
        assert guard.patched_count == 0

    asyncio.run(scenario())

def main():
    """Run all tests"""
    logger.info("\n" + "=" * 60)
    logger.info("🧪 BotLogin - Gateway Client Tests")
    logger.info("=" * 60)

    tests = [value for name, value in globals().items() if name.startswith("test_") and callable(value)]
    failed = 0
    for test in tests:
        try:
            test()
            logger.info(f"✅ {test.__name__}")
        except Exception as e:
            failed += 1
            logger.error(f"❌ {test.__name__}: {e!r}")

    logger.info("=" * 60)
    if failed:
        logger.error(f"❌ {failed}/{len(tests)} tests failed")
        sys.exit(1)
    logger.info(f"✅ ALL {len(tests)} TESTS PASSED")

if __name__ == "__main__":
    main()
