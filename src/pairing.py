"""
Pairing: the rotating 6-digit credential and the QR pairing payload.

The credential lives only in process memory. Restarting the host (or calling
rotate()) forces every phone to pair again.
"""

import json
import os
import re
import secrets
import socket
import threading
from dataclasses import dataclass
from typing import Optional

import qrcode
import qrcode.image.svg

from protocol import PairingDecodeError
from glide_common import log_info, log_debug

CREDENTIAL_DIGITS = 6
_CREDENTIAL_RE = re.compile(r"[0-9]{6}")


def is_valid_credential(value) -> bool:
    return isinstance(value, str) and _CREDENTIAL_RE.fullmatch(value) is not None


class CredentialManager:
    """Owns the active credential and its generation counter."""

    def __init__(self, initial: Optional[str] = None):
        if initial is not None and not is_valid_credential(initial):
            raise ValueError("credential must be exactly 6 decimal digits")
        self._lock = threading.Lock()
        self._value = initial if initial is not None else self.generate()
        self._generation = 0

    @staticmethod
    def generate() -> str:
        """Fresh credential, uniform over 000000-999999."""
        return f"{secrets.randbelow(10 ** CREDENTIAL_DIGITS):0{CREDENTIAL_DIGITS}d}"

    def current(self) -> str:
        with self._lock:
            return self._value

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def rotate(self) -> str:
        """Replace the credential. Handshakes begun under the old one will fail."""
        new_value = self.generate()
        with self._lock:
            self._value = new_value
            self._generation += 1
        log_info("[Pairing] Credential rotated")
        return new_value

    def verify(self, presented, generation: Optional[int] = None) -> bool:
        """Exact comparison against the current credential.

        If `generation` is given (snapshot taken when the handshake began),
        a rotation since then makes the check fail.
        """
        if not is_valid_credential(presented):
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            return secrets.compare_digest(presented, self._value)

    def pairing_payload(self, host_address: str) -> "PairingPayload":
        return PairingPayload(host_address=host_address, credential=self.current())


# =============================================================================
#                              PAIRING PAYLOAD
# =============================================================================

@dataclass(frozen=True)
class PairingPayload:
    host_address: str
    credential: str


def encode_payload(payload: PairingPayload) -> str:
    """Compact JSON record, the text scanned from the QR code."""
    return json.dumps({"ip": payload.host_address, "pin": payload.credential},
                      separators=(",", ":"))


def decode_payload(text) -> PairingPayload:
    """Parse scanned QR text. Raises PairingDecodeError; the caller just re-scans."""
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PairingDecodeError(f"payload is not UTF-8: {e}") from e
    try:
        record = json.loads(text)
    except (TypeError, ValueError) as e:
        raise PairingDecodeError(f"payload is not JSON: {e}") from e
    if not isinstance(record, dict):
        raise PairingDecodeError("payload is not a JSON object")

    ip = record.get("ip")
    pin = record.get("pin")
    if not isinstance(ip, str) or not ip.strip():
        raise PairingDecodeError("payload has no host address")
    if not is_valid_credential(pin):
        raise PairingDecodeError("payload credential is not 6 digits")
    return PairingPayload(host_address=ip, credential=pin)


# =============================================================================
#                              QR RENDERING
# =============================================================================

def _make_qr(payload: PairingPayload):
    qr = qrcode.QRCode(version=None, box_size=10, border=2)
    qr.add_data(encode_payload(payload))
    qr.make(fit=True)
    return qr


def render_qr_ascii(payload: PairingPayload, out=None):
    """Print the pairing QR code to the console."""
    _make_qr(payload).print_ascii(out=out, invert=True)


def render_qr_svg(payload: PairingPayload, path: str) -> str:
    """Save the pairing QR code as SVG (background mode, no console)."""
    img = _make_qr(payload).make_image(image_factory=qrcode.image.svg.SvgImage)
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    img.save(path)
    return path


# =============================================================================
#                              LAN ADDRESS
# =============================================================================

def _is_preferred_lan_ip(ip):
    """Rank LAN-looking addresses (192.168.x.x and 172.x over 10.x VPN ranges)"""
    if ip.startswith('192.168.') or ip.startswith('172.'):
        return 2
    if ip.startswith('10.'):
        return 1
    return 0


def get_local_ip():
    """Get local IP address. Prefers WiFi/LAN IPs over VPN on multi-NIC systems."""
    primary_ip = None
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # UDP connect sends nothing; it only picks the default-route interface
            s.connect(('8.8.8.8', 80))
            primary_ip = s.getsockname()[0]
        finally:
            s.close()
    except OSError as e:
        log_debug(f"get_local_ip socket probe failed: {e}")

    if primary_ip and not primary_ip.startswith('127.'):
        return primary_ip

    try:
        addrs = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
        candidates = [addr[4][0] for addr in addrs if not addr[4][0].startswith('127.')]
        if candidates:
            candidates.sort(key=_is_preferred_lan_ip, reverse=True)
            return candidates[0]
    except OSError as e2:
        log_debug(f"get_local_ip interface enum failed: {e2}")

    return primary_ip or '127.0.0.1'
