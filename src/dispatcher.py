"""
Command dispatcher: applies semantic commands to the Input Injection Surface.

Each session gets a dedicated drain thread so a slow or failing injection call
never blocks the asyncio accept loop. All threads share one lock around the
surface, so exactly one injection call runs at a time on the host.
"""

import threading
import itertools
from collections import deque

from protocol import (
    MoveDelta, ClickLeft, ClickRight, VolumeUp, VolumeDown, InjectionError,
)
from glide_common import log_debug, log_info, log_warning


class CommandDispatcher:
    """Serializes every injection call against a single shared surface."""

    def __init__(self, surface):
        self._surface = surface
        self._inject_lock = threading.Lock()
        # sub-pixel part of the deltas the surface could not represent yet
        self._residual = (0.0, 0.0)

    def apply(self, command) -> bool:
        """Apply one command fully. Returns False if the surface failed (logged)."""
        try:
            with self._inject_lock:
                if isinstance(command, MoveDelta):
                    # read-then-write under the lock so no click lands mid-update
                    x, y = self._surface.get_pointer_position()
                    rx, ry = self._residual
                    tx, ty = x + command.dx + rx, y + command.dy + ry
                    nx, ny = round(tx), round(ty)
                    self._surface.set_pointer_position(nx, ny)
                    self._residual = (tx - nx, ty - ny)
                elif command is ClickLeft:
                    self._surface.click_left()
                elif command is ClickRight:
                    self._surface.click_right()
                elif command is VolumeUp or command is VolumeDown:
                    self._surface.press_media_key(command)
                else:
                    log_warning(f"[Dispatch] Ignoring unknown command {command!r}")
                    return False
        except InjectionError as e:
            log_warning(f"[Dispatch] {command!r} failed: {e}")
            return False
        except Exception as e:
            log_warning(f"[Dispatch] {command!r} failed unexpectedly: {e}")
            return False
        return True

    def open_session(self, session_id) -> "SessionWorker":
        worker = SessionWorker(self, session_id)
        worker.start()
        return worker


class SessionWorker:
    """FIFO drain thread for one session's commands."""

    _ids = itertools.count(1)

    def __init__(self, dispatcher: CommandDispatcher, session_id):
        self.session_id = session_id
        self._dispatcher = dispatcher
        self._pending = deque()
        self._cond = threading.Condition()
        self._busy = False
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, name=f"glide-dispatch-{next(self._ids)}", daemon=True
        )

    @property
    def closed(self):
        return self._closed

    def start(self):
        self._thread.start()

    def submit(self, command) -> bool:
        """Queue a command in arrival order. False once the session is closed."""
        with self._cond:
            if self._closed:
                return False
            self._pending.append(command)
            self._cond.notify_all()
        return True

    def close(self):
        """Abandon queued commands. An in-flight call completes; nothing new starts."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            dropped = len(self._pending)
            self._pending.clear()
            self._cond.notify_all()
        if dropped:
            log_debug(f"[Dispatch] Session {self.session_id}: dropped {dropped} queued commands")

    def join(self, timeout=None):
        self._thread.join(timeout)

    def wait_idle(self, timeout=None) -> bool:
        """Block until the queue is empty and no command is in flight."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and not self._busy, timeout)

    def _run(self):
        log_debug(f"[Dispatch] Session {self.session_id}: worker started")
        while True:
            with self._cond:
                while not self._pending and not self._closed:
                    self._cond.wait()
                if self._closed:
                    break
                command = self._pending.popleft()
                self._busy = True
            try:
                self._dispatcher.apply(command)
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()
        log_info(f"[Dispatch] Session {self.session_id}: worker stopped")
