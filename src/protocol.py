"""
Glide wire protocol: semantic commands, JSON event frames, close codes, errors.

Every frame is a JSON text message with an event name under "t":

  client -> host   {"t":"auth","pin":"482913"}        (handshake, first frame)
                   {"t":"mouseDelta","x":10,"y":-4}
                   {"t":"leftClick"} {"t":"rightClick"}
                   {"t":"volumeUp"}  {"t":"volumeDown"}
                   {"t":"ping"}
  host -> client   {"t":"connect","session":"<id>"}
                   {"t":"connect_error","reason":"auth"}
                   {"t":"disconnect","reason":"..."}
                   {"t":"warning","message":"..."}
                   {"t":"pong"}
"""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Union

# =============================================================================
#                              EVENT NAMES
# =============================================================================

EV_AUTH          = "auth"
EV_MOUSE_DELTA   = "mouseDelta"
EV_LEFT_CLICK    = "leftClick"
EV_RIGHT_CLICK   = "rightClick"
EV_VOLUME_UP     = "volumeUp"
EV_VOLUME_DOWN   = "volumeDown"
EV_PING          = "ping"
EV_PONG          = "pong"
EV_CONNECT       = "connect"
EV_CONNECT_ERROR = "connect_error"
EV_DISCONNECT    = "disconnect"
EV_WARNING       = "warning"

# connect_error reasons
REASON_AUTH         = "auth"          # credential mismatch
REASON_MISSING      = "missing"       # no credential presented
REASON_EXPIRED      = "expired"       # credential rotated mid-handshake
REASON_RATE_LIMITED = "rate_limited"
REASON_BUSY         = "busy"          # another session is active
REASON_TIMEOUT      = "timeout"
REASON_NETWORK      = "network"       # client-side only

# WebSocket close codes (4000-4999 are application defined)
CLOSE_NORMAL       = 1000
CLOSE_UNAUTHORIZED = 4401
CLOSE_BUSY         = 4409
CLOSE_RATE_LIMITED = 4429

# =============================================================================
#                              ERRORS
# =============================================================================

class GlideError(Exception):
    """Base class for every error Glide raises on purpose."""


class AuthError(GlideError):
    """Handshake rejected: the presented credential was missing, wrong or stale."""

    def __init__(self, reason=REASON_AUTH, message=None):
        self.reason = reason
        super().__init__(message or f"authentication rejected ({reason})")


class SessionBusyError(GlideError):
    """The host already has an active session."""


class TransportError(GlideError):
    """Network unreachable, connection refused, or dropped mid-session."""


class HandshakeTimeoutError(GlideError, TimeoutError):
    """The handshake did not complete within the configured bound."""


class CertificateError(GlideError):
    """The host certificate was not trusted or does not match the pinned one."""


class InjectionError(GlideError):
    """The Input Injection Surface rejected or failed a call."""


class PairingDecodeError(GlideError, ValueError):
    """A scanned pairing payload could not be parsed."""


class ProtocolError(GlideError, ValueError):
    """A frame was not valid JSON or not a known event."""

# =============================================================================
#                              COMMANDS
# =============================================================================

@dataclass(frozen=True)
class MoveDelta:
    dx: float
    dy: float


class Action(Enum):
    """Parameterless commands, named by their wire event."""
    CLICK_LEFT  = EV_LEFT_CLICK
    CLICK_RIGHT = EV_RIGHT_CLICK
    VOLUME_UP   = EV_VOLUME_UP
    VOLUME_DOWN = EV_VOLUME_DOWN

    def __repr__(self):
        return f"<{self.value}>"


ClickLeft  = Action.CLICK_LEFT
ClickRight = Action.CLICK_RIGHT
VolumeUp   = Action.VOLUME_UP
VolumeDown = Action.VOLUME_DOWN

Command = Union[MoveDelta, Action]

_ACTIONS_BY_EVENT = {a.value: a for a in Action}

# =============================================================================
#                              CODEC
# =============================================================================

def encode_command(command: Command) -> str:
    """Serialize a command to its wire frame."""
    if isinstance(command, MoveDelta):
        return json.dumps({"t": EV_MOUSE_DELTA, "x": command.dx, "y": command.dy})
    if isinstance(command, Action):
        return json.dumps({"t": command.value})
    raise TypeError(f"not a command: {command!r}")


def _number(value, field):
    # bool is an int subclass; reject it along with NaN/inf
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ProtocolError(f"mouseDelta.{field} must be a finite number")
    return value


def decode_command(msg: dict) -> Command:
    """Turn a parsed frame into a command. Raises ProtocolError for anything else."""
    t = msg.get("t")
    if t == EV_MOUSE_DELTA:
        return MoveDelta(_number(msg.get("x"), "x"), _number(msg.get("y"), "y"))
    action = _ACTIONS_BY_EVENT.get(t)
    if action is None:
        raise ProtocolError(f"unknown event: {t!r}")
    return action


def parse_frame(data: str) -> dict:
    """Parse one text frame into a dict with a string "t"."""
    try:
        msg = json.loads(data)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"frame is not JSON: {e}") from e
    if not isinstance(msg, dict) or not isinstance(msg.get("t"), str):
        raise ProtocolError("frame has no event name")
    return msg


def make_frame(event: str, **fields) -> str:
    return json.dumps({"t": event, **fields})
