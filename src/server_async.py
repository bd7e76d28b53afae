#!/usr/bin/env python3
"""
Glide host: WSS input relay (Async)
FastAPI + uvicorn + async WebSocket + threaded input dispatch

A phone pairs with the 6-digit PIN shown on this machine (typed, or scanned from
the QR code), then streams pointer deltas, clicks and volume keys over TLS.

Run: python server_async.py
"""

import os
import sys
import asyncio
import hashlib
import platform
import socket
import ssl
import time
import uuid
import ipaddress as _ipaddr
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse, Response
from starlette.websockets import WebSocketState
import uvicorn

from protocol import (
    EV_AUTH, EV_PING, EV_PONG, EV_CONNECT, EV_CONNECT_ERROR, EV_DISCONNECT, EV_WARNING,
    REASON_AUTH, REASON_MISSING, REASON_EXPIRED, REASON_RATE_LIMITED, REASON_BUSY,
    REASON_TIMEOUT, CLOSE_NORMAL, CLOSE_UNAUTHORIZED, CLOSE_BUSY, CLOSE_RATE_LIMITED,
    ProtocolError, parse_frame, decode_command, make_frame,
)
from pairing import (
    CredentialManager, encode_payload, render_qr_ascii, render_qr_svg, get_local_ip,
)
from dispatcher import CommandDispatcher
from glide_common import (
    CONFIG_DIR, PynputSurface, check_input_health, get_server_id,
    setup_logging, log_info, log_debug, log_warning, log_error,
)

# =============================================================================
#                              CONSTANTS
# =============================================================================

DEFAULT_PORT = 3000
HANDSHAKE_TIMEOUT = 5.0   # seconds to wait for the auth frame

_AUTH_RATE_LIMIT = 5      # max failed attempts per window
_AUTH_RATE_WINDOW = 60    # seconds
_AUTH_LOCKOUT = 300       # lockout after exceeding the limit

_CLOSE_CODES = {
    REASON_RATE_LIMITED: CLOSE_RATE_LIMITED,
    REASON_BUSY: CLOSE_BUSY,
}

# RFC 1918 + loopback + link-local; anything else is refused
_LAN_NETS = [
    _ipaddr.ip_network("10.0.0.0/8"),
    _ipaddr.ip_network("172.16.0.0/12"),
    _ipaddr.ip_network("192.168.0.0/16"),
    _ipaddr.ip_network("127.0.0.0/8"),
    _ipaddr.ip_network("::1/128"),
    _ipaddr.ip_network("fe80::/10"),
    _ipaddr.ip_network("fc00::/7"),
]

# =============================================================================
#                              SESSION STATE
# =============================================================================

@dataclass
class Session:
    """One live connection; only an authenticated session may dispatch."""
    id: str
    ws: WebSocket
    client_ip: str
    authenticated: bool = False
    started_at: float = field(default_factory=time.time)
    worker: object = None


class SessionRegistry:
    """Single-active-session policy: a second authenticated client is refused."""

    def __init__(self):
        self.active: Optional[Session] = None

    def activate(self, ws: WebSocket, client_ip: str) -> Optional[Session]:
        # Runs on the event loop thread with no await between check and set.
        if self.active is not None:
            return None
        session = Session(id=uuid.uuid4().hex[:8], ws=ws, client_ip=client_ip, authenticated=True)
        self.active = session
        return session

    def release(self, session: Session):
        if self.active is session:
            self.active = None


class AuthRateLimiter:
    """Per-IP failed handshake tracking (brute-force guard for a 6-digit PIN)."""

    def __init__(self, limit=_AUTH_RATE_LIMIT, window=_AUTH_RATE_WINDOW, lockout=_AUTH_LOCKOUT):
        self.limit = limit
        self.window = window
        self.lockout = lockout
        self._attempts: Dict[str, List[float]] = {}

    def is_limited(self, ip: str, now: float = None) -> bool:
        now = time.time() if now is None else now
        attempts = self._attempts.get(ip, [])
        if len(attempts) >= self.limit and (now - attempts[-1]) < self.lockout:
            return True
        attempts = [t for t in attempts if now - t < self.window]
        if attempts:
            self._attempts[ip] = attempts
        else:
            self._attempts.pop(ip, None)
        return False

    def record_failure(self, ip: str, now: float = None):
        now = time.time() if now is None else now
        self._attempts.setdefault(ip, []).append(now)

    def clear(self, ip: str):
        self._attempts.pop(ip, None)


@dataclass
class HostState:
    credentials: CredentialManager
    dispatcher: CommandDispatcher
    port: int = DEFAULT_PORT
    config_dir: str = CONFIG_DIR
    handshake_timeout: float = HANDSHAKE_TIMEOUT
    lan_only: bool = True
    rotate_every: float = 0.0   # seconds, 0 = never
    sessions: SessionRegistry = field(default_factory=SessionRegistry)
    limiter: AuthRateLimiter = field(default_factory=AuthRateLimiter)

# =============================================================================
#                              WEBSOCKET HELPERS
# =============================================================================

def _is_lan_address(host: Optional[str]) -> bool:
    """True for private/loopback peers. Unparseable hosts (test transports) pass."""
    if not host:
        return True
    try:
        client_ip = _ipaddr.ip_address(host)
    except ValueError as e:
        log_debug(f"[LAN] Could not parse client IP '{host}': {e}")
        return True
    # Unwrap IPv4-mapped IPv6 (e.g., ::ffff:192.168.1.5 -> 192.168.1.5)
    if getattr(client_ip, 'ipv4_mapped', None):
        client_ip = client_ip.ipv4_mapped
    return any(client_ip in net for net in _LAN_NETS)


def _is_loopback(host: Optional[str]) -> bool:
    try:
        return _ipaddr.ip_address(host).is_loopback
    except (TypeError, ValueError):
        return False


async def _send_frame(ws: WebSocket, frame: str):
    """Send a text frame if the connection is still open"""
    if ws.client_state == WebSocketState.CONNECTED:
        try:
            await ws.send_text(frame)
        except Exception as e:
            log_debug(f"[WS] send failed (connection closed): {e}")


async def _reject(ws: WebSocket, reason: str):
    """Report connect_error and close before any application event is processed."""
    await _send_frame(ws, make_frame(EV_CONNECT_ERROR, reason=reason))
    try:
        await ws.close(code=_CLOSE_CODES.get(reason, CLOSE_UNAUTHORIZED), reason=reason)
    except Exception as e:
        log_debug(f"[WS] close after reject failed: {e}")


async def _receive_text(ws: WebSocket) -> Optional[str]:
    """Next text frame; None for binary frames. Raises WebSocketDisconnect."""
    message = await ws.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", CLOSE_NORMAL))
    return message.get("text")


async def _authenticate_ws(ws: WebSocket, host: HostState, client_ip: str, generation: int) -> Optional[str]:
    """Check the handshake credential. Returns None on success, else a connect_error reason.

    The credential comes from the `pin` query parameter or, failing that, from a
    first frame {"t":"auth","pin":"..."} that must arrive within the handshake timeout.
    """
    if host.limiter.is_limited(client_ip):
        log_info(f"[Auth] Rate-limited: {client_ip}")
        return REASON_RATE_LIMITED

    pin = ws.query_params.get("pin")
    if pin is None:
        try:
            data = await asyncio.wait_for(_receive_text(ws), timeout=host.handshake_timeout)
        except asyncio.TimeoutError:
            log_info(f"[Auth] Handshake timeout: {client_ip}")
            return REASON_TIMEOUT
        try:
            msg = parse_frame(data)
        except ProtocolError as e:
            log_debug(f"[Auth] Bad handshake frame from {client_ip}: {e}")
            return REASON_MISSING
        if msg["t"] != EV_AUTH:
            return REASON_MISSING
        pin = msg.get("pin")
    if not pin:
        return REASON_MISSING

    if host.credentials.verify(pin, generation=generation):
        host.limiter.clear(client_ip)
        return None
    if host.credentials.generation != generation:
        log_info(f"[Auth] Credential rotated during handshake: {client_ip}")
        return REASON_EXPIRED
    host.limiter.record_failure(client_ip)
    log_warning(f"[Auth] Wrong PIN from {client_ip}")
    return REASON_AUTH

# =============================================================================
#                              INPUT WEBSOCKET
# =============================================================================

async def ws_input(ws: WebSocket, host: HostState):
    """Input WebSocket handler - handshake, then queue commands to the session worker"""
    # snapshot before accept: a rotation from here on invalidates this handshake
    generation = host.credentials.generation
    await ws.accept()
    client_ip = ws.client.host if ws.client else ""
    if host.lan_only and not _is_lan_address(client_ip):
        await _reject(ws, REASON_AUTH)
        return

    try:
        reason = await _authenticate_ws(ws, host, client_ip, generation)
    except WebSocketDisconnect:
        log_debug(f"[Auth] {client_ip} left during handshake")
        return
    if reason is not None:
        await _reject(ws, reason)
        return

    session = host.sessions.activate(ws, client_ip)
    if session is None:
        log_info(f"[Session] Rejected {client_ip}: another session is active")
        await _reject(ws, REASON_BUSY)
        return

    session.worker = host.dispatcher.open_session(session.id)
    log_info(f"[Session] {session.id} connected from {client_ip}")
    await _send_frame(ws, make_frame(EV_CONNECT, session=session.id))

    input_ok, input_err = check_input_health()
    if not input_ok:
        await _send_frame(ws, make_frame(EV_WARNING, message=input_err))

    try:
        while True:
            try:
                data = await _receive_text(ws)
            except WebSocketDisconnect:
                break
            except Exception as e:
                log_warning(f"[Session] {session.id} receive error: {e}")
                break

            if data is None:
                log_debug(f"[Session] {session.id} ignoring binary frame")
                continue
            try:
                msg = parse_frame(data)
                if msg["t"] == EV_PING:
                    # every earlier frame is already queued when this goes out
                    await _send_frame(ws, make_frame(EV_PONG))
                elif msg["t"] == EV_AUTH:
                    continue
                elif not session.worker.submit(decode_command(msg)):
                    break
            except ProtocolError as e:
                log_warning(f"[Session] {session.id} bad frame: {e}")
    finally:
        session.worker.close()
        host.sessions.release(session)
        log_info(f"[Session] {session.id} disconnected")


async def _close_active_session(host: HostState, reason: str):
    session = host.sessions.active
    if session is None:
        return
    if session.worker is not None:
        session.worker.close()
    await _send_frame(session.ws, make_frame(EV_DISCONNECT, reason=reason))
    try:
        await session.ws.close(code=1001, reason=reason)
    except Exception as e:
        log_debug(f"[Shutdown] close failed: {e}")
    host.sessions.release(session)


async def _rotation_timer(host: HostState):
    """Rotate the PIN periodically; live sessions stay connected."""
    while True:
        await asyncio.sleep(host.rotate_every)
        host.credentials.rotate()
        print(f"New PIN: {host.credentials.current()}", flush=True)

# =============================================================================
#                              FASTAPI APP
# =============================================================================

def create_app(host: HostState) -> FastAPI:
    """Build the FastAPI app around one host state"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        input_ok, input_err = check_input_health()
        if not input_ok:
            log_warning(f"[Input] {input_err}")
        else:
            log_info("[Input] Input dispatch health check passed")

        rotate_task = None
        if host.rotate_every > 0:
            rotate_task = asyncio.create_task(_rotation_timer(host))

        log_info("Server ready")
        yield

        log_info("[Shutdown] Starting graceful shutdown...")
        if rotate_task:
            rotate_task.cancel()
        await _close_active_session(host, "shutdown")
        log_info("Server stopped")

    app = FastAPI(lifespan=lifespan)
    app.state.host = host

    @app.middleware("http")
    async def lan_only_middleware(request: Request, call_next):
        """Reject non-LAN IPs (RFC 1918 check)."""
        if host.lan_only and request.client and not _is_lan_address(request.client.host):
            return Response(status_code=403)
        response = await call_next(request)
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    @app.websocket("/ws")
    async def websocket_input_endpoint(websocket: WebSocket):
        await ws_input(websocket, host)

    @app.get("/api/discover")
    async def api_discover():
        """LAN discovery endpoint - no auth required, returns service identity"""
        return {
            "service": "glide",
            "name": platform.node(),
            "port": host.port,
            "server_id": get_server_id(host.config_dir),
            "busy": host.sessions.active is not None,
        }

    @app.post("/api/rotate")
    async def api_rotate(request: Request):
        """Rotate the PIN. Only the host itself may ask."""
        if not _is_loopback(request.client.host if request.client else None):
            return Response(status_code=403)
        host.credentials.rotate()
        payload = host.credentials.pairing_payload(get_local_ip())
        return JSONResponse({"payload": encode_payload(payload)})

    return app

# =============================================================================
#                              SSL CERT GENERATION
# =============================================================================

def generate_ssl_certs(cert_path, key_path):
    """Generate a self-signed certificate for this host's LAN address"""
    from cryptography import x509
    from cryptography.x509.oid import NameOID
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.hazmat.primitives import serialization
    import datetime

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Glide"),
        x509.NameAttribute(NameOID.COMMON_NAME, "localhost"),
    ])

    san_list = [
        x509.DNSName("localhost"),
        x509.IPAddress(_ipaddr.IPv4Address("127.0.0.1")),
        x509.IPAddress(_ipaddr.IPv6Address("::1")),
    ]
    local_ip = get_local_ip()
    try:
        if local_ip != "127.0.0.1":
            san_list.append(x509.IPAddress(_ipaddr.IPv4Address(local_ip)))
    except ValueError as e:
        log_warning(f"Could not add local IP to SSL SAN list: {e}")

    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=365))
        .add_extension(x509.SubjectAlternativeName(san_list), critical=False)
        .sign(key, hashes.SHA256())
    )

    os.makedirs(os.path.dirname(os.path.abspath(cert_path)), exist_ok=True)
    with open(key_path, "wb") as f:
        f.write(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()
        ))
    if platform.system() != 'Windows':
        os.chmod(key_path, 0o600)

    with open(cert_path, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))

    log_info(f"Generated SSL certificate for localhost and {local_ip}")


def ensure_ssl_certs(config_dir=CONFIG_DIR):
    """Return (cert_path, key_path), generating them if missing or if the LAN IP
    is no longer in the certificate's SAN list (DHCP rotation)."""
    cert_path = os.path.join(config_dir, 'cert.pem')
    key_path = os.path.join(config_dir, 'key.pem')

    need_regen = False
    if not os.path.exists(cert_path) or not os.path.exists(key_path):
        need_regen = True
        log_info("SSL certificates not found, generating...")
    else:
        try:
            from cryptography import x509
            from cryptography.x509.oid import ExtensionOID
            with open(cert_path, "rb") as f:
                cert = x509.load_pem_x509_certificate(f.read())
            san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
            san_ips = [str(ip) for ip in san.value.get_values_for_type(x509.IPAddress)]
            current_ip = get_local_ip()
            if current_ip not in san_ips:
                need_regen = True
                log_info(f"IP changed: cert has {san_ips}, current is {current_ip}. Regenerating SSL certs...")
        except (ValueError, OSError, x509.ExtensionNotFound) as e:
            need_regen = True
            log_warning(f"Could not verify cert SANs ({e}), regenerating...")

    if need_regen:
        generate_ssl_certs(cert_path, key_path)
    return cert_path, key_path


def cert_fingerprint(cert_path) -> str:
    """SHA-256 of the DER certificate, the value clients pin on first use"""
    with open(cert_path, "rb") as f:
        der = ssl.PEM_cert_to_DER_cert(f.read().decode("ascii"))
    return hashlib.sha256(der).hexdigest()

# =============================================================================
#                              MAIN
# =============================================================================

def _port_available(port):
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        probe.settimeout(1)
        probe.bind(("0.0.0.0", port))
        return True
    except OSError:
        return False
    finally:
        probe.close()


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Glide host: phone trackpad over WSS (FastAPI + uvicorn)")
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PORT, help=f"Port (default: {DEFAULT_PORT})")
    parser.add_argument("--background", "-bg", action="store_true",
                        help="Background mode (no console, saves QR as SVG)")
    parser.add_argument("--rotate-every", type=float, default=0.0, metavar="MINUTES",
                        help="Rotate the PIN every N minutes (default: never)")
    parser.add_argument("--config-dir", default=CONFIG_DIR,
                        help=f"Config/cert directory (default: {CONFIG_DIR})")
    parser.add_argument("--no-preflight", action="store_true", help="Skip startup checks")
    args = parser.parse_args(argv)

    setup_logging(log_dir=os.path.join(args.config_dir, "logs"))

    if not args.no_preflight:
        import preflight
        result = preflight.run(verbose=not args.background, config_dir=args.config_dir)
        if result.has_required_failures():
            log_error("Preflight failed: " + "; ".join(result.errors))
            sys.exit(1)

    cert_path, key_path = ensure_ssl_certs(args.config_dir)

    if not _port_available(args.port):
        log_error(f"Port {args.port} is already in use")
        sys.exit(1)

    credentials = CredentialManager()
    dispatcher = CommandDispatcher(PynputSurface())
    host = HostState(
        credentials=credentials,
        dispatcher=dispatcher,
        port=args.port,
        config_dir=args.config_dir,
        rotate_every=args.rotate_every * 60,
    )
    app = create_app(host)

    ip = get_local_ip()
    payload = credentials.pairing_payload(ip)
    fingerprint = cert_fingerprint(cert_path)

    if not args.background:
        print(f"\n{'='*50}")
        print(f"Glide host: {ip}:{args.port}")
        print(f"PIN: {payload.credential}")
        print(f"Certificate SHA-256: {fingerprint}")
        print("(Confirm this fingerprint when the phone asks to trust the host)")
        print(f"{'='*50}")
        render_qr_ascii(payload)
        print()
    else:
        qr_path = render_qr_svg(payload, os.path.join(args.config_dir, "pairing_qr.svg"))
        log_info(f"Pairing QR saved to {qr_path}")
    log_info(f"Listening on {ip}:{args.port} (cert {fingerprint[:16]}...)")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=args.port,
        ssl_certfile=cert_path,
        ssl_keyfile=key_path,
        log_level="info" if not args.background else "warning",
        ws_ping_interval=20,
        ws_ping_timeout=20,
    )


if __name__ == "__main__":
    main()
