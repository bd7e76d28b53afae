#!/usr/bin/env python3
"""
Shared utilities for the Glide host and client
- Logging
- Platform detection
- Config directory (JSON)
- Input Injection Surface (pynput)
"""

import sys
import os
import json
import logging
import threading
from logging.handlers import RotatingFileHandler
from datetime import datetime

from protocol import InjectionError, VolumeUp, VolumeDown

# ============================================================================
#                              LOGGING
# ============================================================================

_logger = None

def setup_logging(name="glide", log_dir=None):
    """
    Setup logging to both console and file.
    Log file: <log_dir>/glide_YYYY-MM-DD.log, default ~/.config/glide/logs
    """
    global _logger

    if _logger is not None:
        return _logger

    _logger = logging.getLogger(name)
    _logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers
    if _logger.handlers:
        return _logger

    fmt = logging.Formatter(
        '[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler (INFO and above)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(fmt)
    _logger.addHandler(console)

    # File handler (DEBUG and above)
    if log_dir is None:
        log_dir = os.path.join(CONFIG_DIR, "logs")

    try:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, f"glide_{datetime.now().strftime('%Y-%m-%d')}.log")
        file_handler = RotatingFileHandler(log_file, maxBytes=10_000_000, backupCount=3, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(fmt)
        _logger.addHandler(file_handler)
    except OSError as e:
        print(f"Warning: Could not create log file: {e}")

    return _logger

def get_logger():
    """Get the logger instance"""
    if _logger is None:
        return setup_logging()
    return _logger

def log_info(msg): get_logger().info(msg)
def log_debug(msg): get_logger().debug(msg)
def log_warning(msg): get_logger().warning(msg)
def log_error(msg): get_logger().error(msg)

# ============================================================================
#                           PLATFORM DETECTION
# ============================================================================

def get_platform():
    """Returns 'linux', 'windows', or 'macos'"""
    if sys.platform.startswith('linux'):
        return 'linux'
    elif sys.platform == 'win32':
        return 'windows'
    elif sys.platform == 'darwin':
        return 'macos'
    return 'unknown'

PLATFORM = get_platform()

def get_display_server():
    """Returns 'x11', 'wayland', 'n/a' (non-Linux) or 'unknown'"""
    if PLATFORM != 'linux':
        return 'n/a'
    session_type = os.environ.get('XDG_SESSION_TYPE', '').lower()
    if session_type in ('x11', 'wayland'):
        return session_type
    if os.environ.get('WAYLAND_DISPLAY'):
        return 'wayland'
    if os.environ.get('DISPLAY'):
        return 'x11'
    return 'unknown'

# ============================================================================
#                              CONFIG DIR
# ============================================================================

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".config", "glide")

# Guards all config read-modify-write sequences.
_config_lock = threading.Lock()

def load_json(path):
    """Load a JSON object from path, {} if missing or unreadable.
    Caller MUST hold config_lock() when part of a read-modify-write."""
    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            log_warning(f"Failed to load {path}: {e}")
    return {}

def save_json(path, data):
    """Write a JSON object to path, creating parent dirs.
    Caller MUST hold config_lock() when part of a read-modify-write."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)

def config_lock():
    return _config_lock

def get_server_id(config_dir=CONFIG_DIR):
    """Get or generate a persistent host identity.
    Stored in config.json, survives cert regeneration and IP changes."""
    config_file = os.path.join(config_dir, "config.json")
    with _config_lock:
        config = load_json(config_file)
        sid = config.get("server_id", "")
        if not sid:
            import uuid
            sid = uuid.uuid4().hex[:16]
            config["server_id"] = sid
            save_json(config_file, config)
        return sid

# ============================================================================
#                        INPUT INJECTION SURFACE
# ============================================================================

# macOS Accessibility permission state, checked once and cached.
# Without it, ALL pynput operations silently fail.
_macos_accessibility_checked = False
_macos_accessibility_ok = True
_macos_accessibility_error = None

def _check_macos_accessibility():
    """One-time probe for macOS Accessibility permission via AXIsProcessTrusted().
    Returns True if OK or not macOS."""
    global _macos_accessibility_checked, _macos_accessibility_ok, _macos_accessibility_error
    if _macos_accessibility_checked:
        return _macos_accessibility_ok
    _macos_accessibility_checked = True
    if PLATFORM != 'macos':
        return True
    try:
        import ctypes
        import ctypes.util
        lib_path = ctypes.util.find_library('ApplicationServices')
        if lib_path:
            hi = ctypes.cdll.LoadLibrary(lib_path)
        else:
            hi = ctypes.cdll.LoadLibrary(
                '/System/Library/Frameworks/ApplicationServices.framework/ApplicationServices'
            )
        hi.AXIsProcessTrusted.restype = ctypes.c_bool
        _macos_accessibility_ok = bool(hi.AXIsProcessTrusted())
    except (OSError, AttributeError) as e:
        # The check itself failed; assume OK rather than block on a false negative.
        log_debug(f"[macOS] Accessibility check failed (assuming OK): {e}")
        _macos_accessibility_ok = True
        return True
    if not _macos_accessibility_ok:
        _macos_accessibility_error = (
            "macOS Accessibility permission NOT granted. "
            "Pointer and media key injection will not work. "
            "Fix: System Settings > Privacy & Security > Accessibility, "
            "add the app that runs this server."
        )
        log_warning(f"[macOS] {_macos_accessibility_error}")
    return _macos_accessibility_ok

def check_input_health():
    """Check if input injection is functional. Returns (ok: bool, error: str|None)."""
    if PLATFORM == 'macos' and not _check_macos_accessibility():
        return False, _macos_accessibility_error
    if PLATFORM == 'linux' and get_display_server() == 'wayland':
        return False, "Wayland session: pynput cannot move the pointer outside XWayland windows"
    return True, None


class PynputSurface:
    """The OS pointer/keyboard, driven through cached pynput controllers.

    Only the dispatcher calls this; every primitive raises InjectionError on failure.
    """

    def __init__(self):
        self._mouse = None
        self._keyboard = None

    def _get_mouse(self):
        if self._mouse is None:
            try:
                from pynput.mouse import Controller
                self._mouse = Controller()
            except Exception as e:
                raise InjectionError(f"pynput mouse unavailable: {e}") from e
        return self._mouse

    def _get_keyboard(self):
        if self._keyboard is None:
            try:
                from pynput.keyboard import Controller
                self._keyboard = Controller()
            except Exception as e:
                raise InjectionError(f"pynput keyboard unavailable: {e}") from e
        return self._keyboard

    def get_pointer_position(self):
        try:
            x, y = self._get_mouse().position
        except InjectionError:
            raise
        except Exception as e:
            raise InjectionError(f"read pointer position failed: {e}") from e
        return x, y

    def set_pointer_position(self, x, y):
        try:
            self._get_mouse().position = (int(round(x)), int(round(y)))
        except InjectionError:
            raise
        except Exception as e:
            raise InjectionError(f"set pointer position failed: {e}") from e

    def _click(self, button_name):
        try:
            from pynput.mouse import Button
            self._get_mouse().click(getattr(Button, button_name))
        except InjectionError:
            raise
        except Exception as e:
            raise InjectionError(f"{button_name} click failed: {e}") from e

    def click_left(self):
        self._click("left")

    def click_right(self):
        self._click("right")

    def press_media_key(self, command):
        """Tap the media key for a VolumeUp/VolumeDown command."""
        if command not in (VolumeUp, VolumeDown):
            raise InjectionError(f"not a media key command: {command!r}")
        try:
            from pynput.keyboard import Key
            key = Key.media_volume_up if command is VolumeUp else Key.media_volume_down
            kb = self._get_keyboard()
            kb.press(key)
            kb.release(key)
        except InjectionError:
            raise
        except Exception as e:
            raise InjectionError(f"media key failed: {e}") from e
