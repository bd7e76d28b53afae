#!/usr/bin/env python3
"""
Glide client: secure channel to a Glide host.

Connects over WSS, pins the host's self-signed certificate on first use (after
an explicit trust decision), then authenticates with the 6-digit PIN before any
input event is sent. Includes a replay CLI that feeds a recorded touch trace
through the gesture engine to the host.

Run: python client.py --host 192.168.1.20 --pin 482913 --trace swipe.jsonl
"""

import os
import sys
import json
import time
import asyncio
import hashlib
import ssl
from dataclasses import dataclass
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from protocol import (
    EV_AUTH, EV_CONNECT, EV_CONNECT_ERROR, EV_PING, EV_PONG,
    REASON_AUTH, REASON_BUSY, REASON_TIMEOUT,
    AuthError, SessionBusyError, TransportError, HandshakeTimeoutError, CertificateError,
    GlideError, encode_command, make_frame, parse_frame,
)
from pairing import decode_payload, is_valid_credential
from glide_common import (
    CONFIG_DIR, load_json, save_json, config_lock, setup_logging,
    log_info, log_debug, log_warning, log_error,
)

DEFAULT_PORT = 3000
CONNECT_TIMEOUT = 5.0
CONNECT_RETRIES = 2

# =============================================================================
#                              CERTIFICATE PINNING
# =============================================================================

class KnownHosts:
    """host:port -> SHA-256 certificate fingerprint, pinned on first use."""

    def __init__(self, path=None):
        self.path = path or os.path.join(CONFIG_DIR, "known_hosts.json")

    def get(self, host_key: str) -> Optional[str]:
        with config_lock():
            return load_json(self.path).get(host_key)

    def pin(self, host_key: str, fingerprint: str):
        with config_lock():
            data = load_json(self.path)
            data[host_key] = fingerprint
            save_json(self.path, data)

    def forget(self, host_key: str):
        with config_lock():
            data = load_json(self.path)
            if data.pop(host_key, None) is not None:
                save_json(self.path, data)


def check_trust(known_hosts: KnownHosts, host_key: str, fingerprint: str,
                trust_prompt: Optional[Callable[[str, str], bool]]):
    """Accept a pinned match, ask about a new host, refuse a changed certificate."""
    pinned = known_hosts.get(host_key)
    if pinned is not None:
        if pinned != fingerprint:
            log_error(f"[Trust] Certificate for {host_key} CHANGED "
                      f"(pinned {pinned[:16]}..., got {fingerprint[:16]}...)")
            raise CertificateError(f"certificate for {host_key} does not match the pinned one")
        return
    if trust_prompt is None or not trust_prompt(host_key, fingerprint):
        log_warning(f"[Trust] User declined certificate {fingerprint[:16]}... for {host_key}")
        raise CertificateError(f"certificate for {host_key} not trusted")
    known_hosts.pin(host_key, fingerprint)
    log_info(f"[Trust] Pinned {host_key} -> {fingerprint}")


def _client_ssl_context() -> ssl.SSLContext:
    # The host cert is self-signed (no CA on a LAN); trust comes from check_trust().
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def _peer_fingerprint(ws) -> str:
    ssl_object = ws.transport.get_extra_info("ssl_object")
    if ssl_object is None:
        raise CertificateError("connection is not encrypted")
    der = ssl_object.getpeercert(binary_form=True)
    if not der:
        raise CertificateError("host presented no certificate")
    return hashlib.sha256(der).hexdigest()

# =============================================================================
#                              CLIENT
# =============================================================================

@dataclass
class ConnectOptions:
    port: int = DEFAULT_PORT
    timeout: float = CONNECT_TIMEOUT
    retries: int = CONNECT_RETRIES   # extra attempts after the first


def _raise_for_connect_error(reason):
    if reason == REASON_BUSY:
        raise SessionBusyError("host already has an active session")
    if reason == REASON_TIMEOUT:
        raise HandshakeTimeoutError("host timed out waiting for the PIN")
    raise AuthError(reason or REASON_AUTH)


class GlideClient:
    """Opens authenticated sessions to a Glide host."""

    def __init__(self, known_hosts: KnownHosts = None,
                 trust_prompt: Optional[Callable[[str, str], bool]] = None,
                 options: ConnectOptions = None):
        self.known_hosts = known_hosts or KnownHosts()
        self.trust_prompt = trust_prompt
        self.options = options or ConnectOptions()

    async def connect(self, host: str, pin: str, options: ConnectOptions = None) -> "ClientSession":
        """Open a session, retrying transport failures and timeouts a bounded number of times.

        Raises AuthError, SessionBusyError and CertificateError at once;
        TransportError / HandshakeTimeoutError after the retry budget is spent.
        """
        if not is_valid_credential(pin):
            raise AuthError(REASON_AUTH, "PIN must be exactly 6 digits")
        options = options or self.options
        attempts = 1 + max(0, options.retries)
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                ws, session_id = await self._handshake(host, pin, options)
            except (TransportError, HandshakeTimeoutError) as e:
                last_error = e
                log_warning(f"[Client] Connect attempt {attempt}/{attempts} to {host} failed: {e}")
                continue
            log_info(f"[Client] Session {session_id} open with {host}:{options.port}")
            return ClientSession(self, host, pin, options, ws, session_id)
        raise last_error

    async def connect_with_payload(self, qr_text, options: ConnectOptions = None) -> "ClientSession":
        """Connect using scanned QR text. PairingDecodeError means: scan again."""
        payload = decode_payload(qr_text)
        return await self.connect(payload.host_address, payload.credential, options)

    async def _open(self, url, options):
        return await websockets.connect(
            url, ssl=_client_ssl_context(), open_timeout=options.timeout,
            ping_interval=20, ping_timeout=20, close_timeout=2,
        )

    async def _handshake(self, host, pin, options):
        url = f"wss://{host}:{options.port}/ws"
        try:
            ws = await asyncio.wait_for(self._open(url, options), timeout=options.timeout)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise HandshakeTimeoutError(f"no answer from {host}:{options.port} within {options.timeout}s") from e
        except InvalidURI as e:
            raise TransportError(f"bad host address {host!r}: {e}") from e
        except (OSError, InvalidHandshake) as e:
            raise TransportError(f"cannot reach {host}:{options.port}: {e}") from e

        try:
            check_trust(self.known_hosts, f"{host}:{options.port}", _peer_fingerprint(ws),
                        self.trust_prompt)
            await ws.send(make_frame(EV_AUTH, pin=pin))
            reply = parse_frame(await asyncio.wait_for(ws.recv(), timeout=options.timeout))
        except asyncio.TimeoutError as e:
            await ws.close()
            raise HandshakeTimeoutError(f"{host} did not answer the PIN in {options.timeout}s") from e
        except ConnectionClosed as e:
            raise TransportError(f"{host} closed the connection during handshake: {e}") from e
        except GlideError:
            await ws.close()
            raise

        if reply["t"] == EV_CONNECT:
            return ws, reply.get("session")
        await ws.close()
        if reply["t"] == EV_CONNECT_ERROR:
            _raise_for_connect_error(reply.get("reason"))
        raise TransportError(f"unexpected handshake reply {reply['t']!r}")


class ClientSession:
    """An authenticated channel. send() reconnects once the link drops, within the retry budget."""

    def __init__(self, client: GlideClient, host, pin, options, ws, session_id):
        self._client = client
        self.host = host
        self._pin = pin
        self.options = options
        self._ws = ws
        self.session_id = session_id
        self.closed = False

    async def send(self, command):
        if self.closed:
            raise TransportError("session is closed")
        frame = encode_command(command)
        try:
            await self._ws.send(frame)
            return
        except ConnectionClosed as e:
            log_warning(f"[Client] Link to {self.host} dropped ({e}), reconnecting")
        await self._reconnect()
        try:
            await self._ws.send(frame)
        except ConnectionClosed as e:
            raise TransportError(f"link to {self.host} dropped again: {e}") from e

    async def ping(self, timeout: float = None):
        """Round trip that returns once the host has queued every earlier command."""
        await self._ws.send(make_frame(EV_PING))
        await asyncio.wait_for(self._await_pong(), timeout=timeout or self.options.timeout)

    async def _await_pong(self):
        while True:
            msg = parse_frame(await self._ws.recv())
            if msg["t"] == EV_PONG:
                return
            log_debug(f"[Client] host says: {msg}")

    async def _reconnect(self):
        try:
            await self._ws.close()
        except Exception as e:
            log_debug(f"[Client] close before reconnect failed: {e}")
        fresh = await self._client.connect(self.host, self._pin, self.options)
        self._ws, self.session_id = fresh._ws, fresh.session_id

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self._ws.close()
        log_info(f"[Client] Session {self.session_id} closed")

# =============================================================================
#                              TRACE REPLAY
# =============================================================================

async def replay_trace(session: ClientSession, lines, config=None):
    """Feed recorded events (JSON lines) through the gesture engine to the host.

    Each line: {"e":"down"|"move"|"up"|"cancel","id":1,"x":0,"y":0,"t":0}
    or {"e":"key","key":"VolumeUp"}. Times are in milliseconds.
    """
    from gesture_engine import GestureEngine

    outbox = []
    engine = GestureEngine(outbox.append, config)
    sent = 0
    for raw in lines:
        raw = raw.strip()
        if not raw or raw.startswith("#"):
            continue
        ev = json.loads(raw)
        kind = ev.get("e")
        if kind == "down":
            engine.contact_down(ev["id"], ev["x"], ev["y"], ev["t"])
        elif kind == "move":
            engine.contact_move(ev["id"], ev["x"], ev["y"], ev.get("t"))
        elif kind == "up":
            engine.contact_up(ev["id"], ev["t"])
        elif kind == "cancel":
            engine.contact_cancel(ev["id"], ev["t"])
        elif kind == "key":
            engine.key_press(ev["key"])
        else:
            log_warning(f"[Replay] Skipping unknown event {kind!r}")
        while outbox:
            await session.send(outbox.pop(0))
            sent += 1
    return sent


def _console_trust_prompt(host_key, fingerprint):
    print(f"Host {host_key} presents an unknown certificate:")
    print(f"  SHA-256 {fingerprint}")
    print("Compare it with the fingerprint printed by the host.")
    return input("Trust this host? [y/N] ").strip().lower() in ("y", "yes")


async def _run_cli(args):
    client = GlideClient(
        known_hosts=KnownHosts(args.known_hosts),
        trust_prompt=_console_trust_prompt,
        options=ConnectOptions(port=args.port, timeout=args.timeout, retries=args.retries),
    )
    if args.qr:
        session = await client.connect_with_payload(args.qr)
    else:
        session = await client.connect(args.host, args.pin)
    try:
        if args.trace:
            with open(args.trace, "r") as f:
                sent = await replay_trace(session, f)
            await session.ping()
            print(f"Replayed trace: {sent} commands sent")
        else:
            start = time.time()
            await session.ping()
            print(f"Connected, round trip {1000 * (time.time() - start):.1f} ms")
    finally:
        await session.close()


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Glide client: pair with a host and replay touch input")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--host", help="Host address")
    target.add_argument("--qr", help="Scanned pairing payload text")
    parser.add_argument("--pin", help="6-digit PIN shown on the host")
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--timeout", type=float, default=CONNECT_TIMEOUT, help="Per-attempt timeout (s)")
    parser.add_argument("--retries", type=int, default=CONNECT_RETRIES, help="Extra connect attempts")
    parser.add_argument("--trace", help="JSON-lines touch trace to replay")
    parser.add_argument("--known-hosts", default=None, help="Pinned certificate store")
    args = parser.parse_args(argv)
    if args.host and not args.pin:
        parser.error("--pin is required with --host")

    setup_logging("glide")
    try:
        asyncio.run(_run_cli(args))
    except AuthError as e:
        print(f"Pairing refused ({e.reason}): check the PIN", file=sys.stderr)
        sys.exit(2)
    except HandshakeTimeoutError as e:
        print(f"Timed out: check the network ({e})", file=sys.stderr)
        sys.exit(3)
    except TransportError as e:
        print(f"Cannot reach host: check the network ({e})", file=sys.stderr)
        sys.exit(3)
    except (SessionBusyError, CertificateError) as e:
        print(str(e), file=sys.stderr)
        sys.exit(4)
    except GlideError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
