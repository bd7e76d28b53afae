"""
Tests for the client handshake, certificate pinning and reconnect logic.

The network is replaced by fake connections handed out from websockets.connect.
"""

import asyncio
import hashlib
import json

import pytest
from websockets.exceptions import ConnectionClosed

import client
from client import GlideClient, KnownHosts, ConnectOptions, replay_trace
from protocol import (
    AuthError, SessionBusyError, TransportError, HandshakeTimeoutError, CertificateError,
    ClickLeft,
)

PIN = "482913"
CERT = b"host-cert-der"
FINGERPRINT = hashlib.sha256(CERT).hexdigest()


class FakeSSLObject:
    def __init__(self, der):
        self._der = der

    def getpeercert(self, binary_form=False):
        return self._der


class FakeTransport:
    def __init__(self, der):
        self._der = der

    def get_extra_info(self, name):
        return FakeSSLObject(self._der) if name == "ssl_object" else None


class FakeConnection:
    def __init__(self, replies, der=CERT):
        self.transport = FakeTransport(der)
        self.replies = list(replies)
        self.sent = []
        self.closed = False
        self.drop_sends = 0

    async def send(self, data):
        if self.drop_sends:
            self.drop_sends -= 1
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(data))

    async def recv(self):
        if not self.replies:
            await asyncio.sleep(60)
        return self.replies.pop(0)

    async def close(self):
        self.closed = True


class ChattyConnection(FakeConnection):
    """Answers every recv with a warning frame after a short pause, never a pong."""

    warnings_sent = 0

    async def recv(self):
        if self.replies:
            return self.replies.pop(0)
        await asyncio.sleep(0.05)
        self.warnings_sent += 1
        return json.dumps({"t": "warning", "message": "still here"})


def connected(session="abc123"):
    return FakeConnection([json.dumps({"t": "connect", "session": session})])


def refused(reason):
    return FakeConnection([json.dumps({"t": "connect_error", "reason": reason})])


@pytest.fixture
def network(monkeypatch):
    """Queue of outcomes for successive connect calls: a connection or an exception."""
    outcomes = []
    urls = []

    async def fake_connect(url, **kwargs):
        urls.append(url)
        outcome = outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome

    monkeypatch.setattr(client.websockets, "connect", fake_connect)
    return outcomes, urls


@pytest.fixture
def known_hosts(tmp_path):
    return KnownHosts(str(tmp_path / "known_hosts.json"))


def make_client(known_hosts, trust=True, **options):
    return GlideClient(
        known_hosts=known_hosts,
        trust_prompt=lambda host_key, fp: trust,
        options=ConnectOptions(**{"timeout": 0.5, "retries": 2, **options}),
    )


class TestConnect:

    def test_connect_pins_and_authenticates(self, network, known_hosts):
        outcomes, urls = network
        conn = connected("s-1")
        outcomes.append(conn)
        session = asyncio.run(make_client(known_hosts).connect("192.168.1.20", PIN))
        assert session.session_id == "s-1"
        assert urls == ["wss://192.168.1.20:3000/ws"]
        assert conn.sent == [{"t": "auth", "pin": PIN}]
        assert known_hosts.get("192.168.1.20:3000") == FINGERPRINT

    @pytest.mark.parametrize("pin", ["12345", "482913\n"])
    def test_malformed_pin_never_dials(self, network, known_hosts, pin):
        outcomes, urls = network
        with pytest.raises(AuthError):
            asyncio.run(make_client(known_hosts).connect("192.168.1.20", pin))
        assert urls == []

    def test_wrong_pin_is_not_retried(self, network, known_hosts):
        outcomes, urls = network
        conn = refused("auth")
        outcomes.append(conn)
        with pytest.raises(AuthError) as exc:
            asyncio.run(make_client(known_hosts).connect("192.168.1.20", PIN))
        assert exc.value.reason == "auth"
        assert len(urls) == 1
        assert conn.closed

    def test_busy_host(self, network, known_hosts):
        outcomes, _ = network
        outcomes.append(refused("busy"))
        with pytest.raises(SessionBusyError):
            asyncio.run(make_client(known_hosts).connect("192.168.1.20", PIN))

    def test_expired_pin_reports_reason(self, network, known_hosts):
        outcomes, _ = network
        outcomes.append(refused("expired"))
        with pytest.raises(AuthError) as exc:
            asyncio.run(make_client(known_hosts).connect("192.168.1.20", PIN))
        assert exc.value.reason == "expired"

    def test_transport_errors_are_retried(self, network, known_hosts):
        outcomes, urls = network
        outcomes.extend([ConnectionRefusedError(), OSError("unreachable"), connected()])
        session = asyncio.run(make_client(known_hosts).connect("192.168.1.20", PIN))
        assert session.session_id == "abc123"
        assert len(urls) == 3

    def test_retry_budget_is_bounded(self, network, known_hosts):
        outcomes, urls = network
        outcomes.extend([ConnectionRefusedError()] * 3)
        with pytest.raises(TransportError):
            asyncio.run(make_client(known_hosts).connect("192.168.1.20", PIN))
        assert len(urls) == 3

    def test_slow_host_times_out(self, network, known_hosts):
        outcomes, _ = network

        async def hang():
            await asyncio.sleep(60)

        outcomes.append(hang)
        with pytest.raises(HandshakeTimeoutError):
            asyncio.run(make_client(known_hosts, timeout=0.05, retries=0).connect("192.168.1.20", PIN))

    def test_connect_with_payload(self, network, known_hosts):
        outcomes, urls = network
        conn = connected()
        outcomes.append(conn)
        qr = json.dumps({"ip": "10.0.0.7", "pin": "000123"})
        asyncio.run(make_client(known_hosts).connect_with_payload(qr))
        assert urls == ["wss://10.0.0.7:3000/ws"]
        assert conn.sent == [{"t": "auth", "pin": "000123"}]


class TestTrust:

    def test_declined_certificate_sends_nothing(self, network, known_hosts):
        outcomes, _ = network
        conn = connected()
        outcomes.append(conn)
        with pytest.raises(CertificateError):
            asyncio.run(make_client(known_hosts, trust=False).connect("192.168.1.20", PIN))
        assert conn.sent == []
        assert conn.closed
        assert known_hosts.get("192.168.1.20:3000") is None

    def test_changed_certificate_is_refused(self, network, known_hosts):
        outcomes, _ = network
        known_hosts.pin("192.168.1.20:3000", "0" * 64)
        conn = connected()
        outcomes.append(conn)
        with pytest.raises(CertificateError):
            asyncio.run(make_client(known_hosts).connect("192.168.1.20", PIN))
        assert conn.sent == []

    def test_pinned_certificate_skips_prompt(self, network, known_hosts):
        outcomes, _ = network
        known_hosts.pin("192.168.1.20:3000", FINGERPRINT)
        outcomes.append(connected())
        asked = []
        glide = GlideClient(known_hosts, trust_prompt=lambda *a: asked.append(a) or False,
                            options=ConnectOptions(timeout=0.5))
        asyncio.run(glide.connect("192.168.1.20", PIN))
        assert asked == []

    def test_forget(self, known_hosts):
        known_hosts.pin("h:1", "ab")
        known_hosts.forget("h:1")
        assert known_hosts.get("h:1") is None


class TestSession:

    def test_send_reconnects_after_drop(self, network, known_hosts):
        outcomes, urls = network
        first, second = connected("s-1"), connected("s-2")
        outcomes.extend([first, second])

        async def scenario():
            session = await make_client(known_hosts).connect("192.168.1.20", PIN)
            first.drop_sends = 1
            await session.send(ClickLeft)
            return session

        session = asyncio.run(scenario())
        assert session.session_id == "s-2"
        assert first.closed
        assert second.sent == [{"t": "auth", "pin": PIN}, {"t": "leftClick"}]

    def test_send_after_close_fails(self, network, known_hosts):
        outcomes, _ = network
        outcomes.append(connected())

        async def scenario():
            session = await make_client(known_hosts).connect("192.168.1.20", PIN)
            await session.close()
            await session.send(ClickLeft)

        with pytest.raises(TransportError):
            asyncio.run(scenario())

    def test_replay_trace(self, network, known_hosts):
        outcomes, _ = network
        conn = connected()
        outcomes.append(conn)
        trace = [
            '{"e":"down","id":1,"x":100,"y":100,"t":0}',
            '{"e":"move","id":1,"x":105,"y":98,"t":16}',
            '{"e":"up","id":1,"t":40}',
            "# tap",
            '{"e":"down","id":2,"x":0,"y":0,"t":500}',
            '{"e":"up","id":2,"t":560}',
            '{"e":"key","key":"VolumeUp"}',
        ]

        async def scenario():
            session = await make_client(known_hosts).connect("192.168.1.20", PIN)
            return await replay_trace(session, trace)

        assert asyncio.run(scenario()) == 3
        assert conn.sent[1:] == [
            {"t": "mouseDelta", "x": 10.0, "y": -4.0},
            {"t": "leftClick"},
            {"t": "volumeUp"},
        ]

    def test_ping_skips_other_frames(self, network, known_hosts):
        outcomes, _ = network
        conn = connected()
        conn.replies += [json.dumps({"t": "warning", "message": "no input"}), json.dumps({"t": "pong"})]
        outcomes.append(conn)

        async def scenario():
            session = await make_client(known_hosts).connect("192.168.1.20", PIN)
            await session.ping(timeout=1.0)

        asyncio.run(scenario())
        assert conn.sent[-1] == {"t": "ping"}

    def test_ping_deadline_covers_chatty_host(self, network, known_hosts):
        outcomes, _ = network
        conn = ChattyConnection([json.dumps({"t": "connect", "session": "s-1"})])
        outcomes.append(conn)

        async def scenario():
            session = await make_client(known_hosts).connect("192.168.1.20", PIN)
            await session.ping(timeout=0.2)

        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(scenario())
        assert conn.warnings_sent > 1
