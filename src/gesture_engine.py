"""
Client-side gesture recognition.

Turns a serial stream of touch contact events into semantic commands:
one-finger drag -> MoveDelta, one-finger tap -> ClickLeft,
two-finger tap -> ClickRight. Hardware volume keys bypass gesture state.

Taps are classified by the PEAK number of concurrent contacts seen during the
gesture, so the order in which fingers are lifted does not matter. Only the
contact that opened the gesture drives the pointer; later contacts are
tracked for the peak count only.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from protocol import MoveDelta, ClickLeft, ClickRight, VolumeUp, VolumeDown


@dataclass
class GestureConfig:
    sensitivity: float = 2.0       # host pixels per touch pixel
    move_threshold: float = 1.0    # min scaled delta magnitude that counts as movement
    tap_max_ms: float = 200.0      # press shorter than this may be a tap


@dataclass
class Contact:
    id: int
    x: float
    y: float
    start_time: float


@dataclass
class _GestureState:
    """Per-gesture bookkeeping, reset when the first contact lands."""
    start_time: float = 0.0
    last_x: float = 0.0
    last_y: float = 0.0
    has_moved: bool = False
    peak: int = 0
    cancelled: bool = False
    anchor_id: Optional[int] = None


VOLUME_KEYS = {
    "VolumeUp": VolumeUp,
    "VolumeDown": VolumeDown,
    "AudioVolumeUp": VolumeUp,
    "AudioVolumeDown": VolumeDown,
}


class GestureEngine:
    """Stateful classifier; call it from the single UI event thread, in order."""

    def __init__(self, sink: Callable, config: Optional[GestureConfig] = None):
        self._sink = sink
        self.config = config or GestureConfig()
        self.contacts: Dict[int, Contact] = {}
        self._g = _GestureState()

    @property
    def peak_contacts(self) -> int:
        return self._g.peak

    @property
    def has_moved(self) -> bool:
        return self._g.has_moved

    def contact_down(self, contact_id: int, x: float, y: float, t: float):
        if contact_id in self.contacts:
            return
        self.contacts[contact_id] = Contact(contact_id, x, y, t)
        if len(self.contacts) == 1:
            self._g = _GestureState(start_time=t, last_x=x, last_y=y, peak=1, anchor_id=contact_id)
        else:
            self._g.peak = max(self._g.peak, len(self.contacts))

    def contact_move(self, contact_id: int, x: float, y: float, t: float = None):
        contact = self.contacts.get(contact_id)
        if contact is None:
            return
        contact.x, contact.y = x, y
        if len(self.contacts) != 1 or contact_id != self._g.anchor_id:
            return

        g = self._g
        dx = (x - g.last_x) * self.config.sensitivity
        dy = (y - g.last_y) * self.config.sensitivity
        # always re-anchor, even below threshold, so small steps don't accumulate
        g.last_x, g.last_y = x, y
        if math.hypot(dx, dy) > self.config.move_threshold:
            g.has_moved = True
            self._sink(MoveDelta(dx, dy))

    def contact_up(self, contact_id: int, t: float):
        if self.contacts.pop(contact_id, None) is None:
            return
        if self.contacts:
            remaining = next(iter(self.contacts.values()))
            if len(self.contacts) == 1 and remaining.id == self._g.anchor_id:
                # first finger is alone again; resume the drag from where it is now
                self._g.last_x, self._g.last_y = remaining.x, remaining.y
            return

        g = self._g
        command = None
        if not g.cancelled and not g.has_moved and (t - g.start_time) < self.config.tap_max_ms:
            if g.peak == 1:
                command = ClickLeft
            elif g.peak == 2:
                command = ClickRight
        self._g = _GestureState()
        if command is not None:
            self._sink(command)

    def contact_cancel(self, contact_id: int, t: float):
        """The OS took the contact away (e.g. palm rejection); no tap for this gesture."""
        if contact_id in self.contacts:
            self._g.cancelled = True
            self.contact_up(contact_id, t)

    def key_press(self, key: str) -> bool:
        command = VOLUME_KEYS.get(key)
        if command is None:
            return False
        self._sink(command)
        return True

    def reset(self):
        self.contacts.clear()
        self._g = _GestureState()
