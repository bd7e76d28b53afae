#!/usr/bin/env python3
"""
Preflight checks for the Glide host.

Runs before the server starts to verify dependencies, detect the input
backend and pick a TLS certificate source.

Philosophy:
- Never crash silently
- Degrade gracefully when input injection is unavailable (the host still pairs)
- Exit early with clear error messages when required packages are missing
- Print a startup summary showing what's available
"""

import sys
import os
import platform as _platform
import importlib
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict

from glide_common import CONFIG_DIR, get_platform, get_display_server, _check_macos_accessibility

# Minimum Python version
MIN_PYTHON = (3, 9)


# =============================================================================
# Dependency Classification
# =============================================================================

class DepType(Enum):
    REQUIRED = "required"        # Host cannot run without this
    OPTIONAL = "optional"        # Feature disabled if missing


@dataclass
class Dependency:
    name: str
    dep_type: DepType
    import_name: str
    fallback: Optional[str] = None
    install_hint: Optional[str] = None


@dataclass
class DependencyStatus:
    name: str
    dep_type: DepType
    available: bool
    version: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Configuration Dataclasses
# =============================================================================

@dataclass
class InputConfig:
    type: Optional[str] = None  # "pynput" or None
    display: Optional[str] = None
    needs_permission: bool = False


@dataclass
class SSLConfig:
    type: str  # "existing" or "generate"
    cert_path: Optional[str] = None
    key_path: Optional[str] = None


# =============================================================================
# Preflight Result
# =============================================================================

@dataclass
class PreflightResult:
    """Complete results from preflight checks"""

    platform: str = "unknown"
    display_server: str = "unknown"
    python_version: str = ""
    arch: str = ""

    dependencies: Dict[str, DependencyStatus] = field(default_factory=dict)

    input_control: Optional[InputConfig] = None
    ssl: Optional[SSLConfig] = None

    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def has_required_failures(self) -> bool:
        if self.errors:
            return True
        for status in self.dependencies.values():
            if status.dep_type == DepType.REQUIRED and not status.available:
                return True
        return False

    def is_available(self, name: str) -> bool:
        status = self.dependencies.get(name)
        return bool(status and status.available)

    def add_warning(self, msg: str):
        self.warnings.append(msg)

    def add_error(self, msg: str):
        self.errors.append(msg)


# =============================================================================
# Dependency Registry
# =============================================================================

DEPENDENCIES = [
    # === REQUIRED ===
    Dependency(
        name="fastapi",
        dep_type=DepType.REQUIRED,
        import_name="fastapi",
        install_hint="pip install fastapi"
    ),
    Dependency(
        name="uvicorn",
        dep_type=DepType.REQUIRED,
        import_name="uvicorn",
        install_hint="pip install uvicorn[standard]"
    ),
    Dependency(
        name="cryptography",
        dep_type=DepType.REQUIRED,
        import_name="cryptography",
        install_hint="pip install cryptography"
    ),
    Dependency(
        name="websockets",
        dep_type=DepType.REQUIRED,
        import_name="websockets",
        install_hint="pip install websockets"
    ),
    Dependency(
        name="qrcode",
        dep_type=DepType.REQUIRED,
        import_name="qrcode",
        install_hint="pip install qrcode"
    ),

    # === OPTIONAL ===
    Dependency(
        name="pynput",
        dep_type=DepType.OPTIONAL,
        import_name="pynput",
        fallback="Pointer and volume control disabled",
        install_hint="pip install pynput"
    ),
]


# =============================================================================
# Dependency Checking
# =============================================================================

def check_dependency(dep: Dependency, result: PreflightResult) -> bool:
    """Check a single dependency, return True if available"""
    try:
        module = importlib.import_module(dep.import_name)

        version = getattr(module, '__version__', None)
        if version is None:
            try:
                from importlib.metadata import version as get_version, PackageNotFoundError
                version = get_version(dep.name)
            except PackageNotFoundError:
                version = 'unknown'

        result.dependencies[dep.name] = DependencyStatus(
            name=dep.name,
            dep_type=dep.dep_type,
            available=True,
            version=str(version)
        )
        return True

    except ImportError as e:
        result.dependencies[dep.name] = DependencyStatus(
            name=dep.name,
            dep_type=dep.dep_type,
            available=False,
            error=str(e)
        )

        if dep.dep_type == DepType.REQUIRED:
            result.add_error(f"Required: {dep.name} not installed. {dep.install_hint or ''}")
        elif dep.fallback:
            result.add_warning(f"{dep.name} not available: {dep.fallback}")

        return False


# =============================================================================
# Feature Selection
# =============================================================================

def select_input(result: PreflightResult) -> InputConfig:
    """Select the input injection backend"""
    if not result.is_available('pynput'):
        result.add_warning("No input control available - the host will pair but cannot move the pointer")
        result.add_warning("  Fix: pip install pynput")
        return InputConfig(type=None)

    if result.platform == 'macos' and not _check_macos_accessibility():
        result.add_warning("macOS Accessibility permission NOT granted - input will fail!")
        result.add_warning("  Fix: System Settings > Privacy & Security > Accessibility")
        result.add_warning("  Add your terminal app (Terminal, iTerm, VS Code) to allowed list")
        return InputConfig(type="pynput", needs_permission=True)

    if result.platform == 'linux':
        if result.display_server == 'wayland':
            result.add_warning("Wayland session - pynput cannot inject pointer events")
            result.add_warning("  Fix: log in with an X11 session")
            return InputConfig(type=None, display="wayland")
        if result.display_server != 'x11':
            result.add_warning("No X display found - pointer control disabled")
            return InputConfig(type=None, display=result.display_server)
        return InputConfig(type="pynput", display="x11")

    return InputConfig(type="pynput")


def select_ssl(result: PreflightResult, config_dir: str) -> SSLConfig:
    """Reuse the certificate in the config dir, or plan to generate one"""
    cert_path = os.path.join(config_dir, 'cert.pem')
    key_path = os.path.join(config_dir, 'key.pem')

    if os.path.exists(cert_path) and os.path.exists(key_path):
        return SSLConfig(type="existing", cert_path=cert_path, key_path=key_path)
    return SSLConfig(type="generate", cert_path=cert_path, key_path=key_path)


# =============================================================================
# Startup Summary
# =============================================================================

def print_summary(result: PreflightResult):
    """Print startup summary"""

    print()
    print("=" * 70)
    print("                      GLIDE PREFLIGHT CHECK")
    print("=" * 70)
    print()

    print("  PLATFORM")
    print("  " + "-" * 8)
    print(f"  OS:              {result.platform} {result.arch}")
    if result.platform == 'linux':
        print(f"  Display:         {result.display_server}")
    print(f"  Python:          {result.python_version}")
    print()

    print("  DEPENDENCIES")
    print("  " + "-" * 12)

    required = [d for d in result.dependencies.values() if d.dep_type == DepType.REQUIRED]
    optional = [d for d in result.dependencies.values() if d.dep_type == DepType.OPTIONAL]

    ok_req = [d for d in required if d.available]
    if ok_req:
        print(f"  [OK] {', '.join(d.name for d in ok_req)}")
    for d in required:
        if not d.available:
            print(f"  [XX] {d.name} - NOT INSTALLED")

    ok_opt = [d for d in optional if d.available]
    if ok_opt:
        print(f"  [OK] {', '.join(d.name for d in ok_opt)}")
    for d in optional:
        if not d.available:
            print(f"  [!!] {d.name} - not installed")
    print()

    print("  FEATURES")
    print("  " + "-" * 8)
    ic = result.input_control
    if ic and ic.type:
        extra = " (needs permission)" if ic.needs_permission else ""
        print(f"  Input:           {ic.type}{extra}")
    else:
        print("  Input:           DISABLED")
    if result.ssl:
        print(f"  TLS:             {result.ssl.type.capitalize()} ({result.ssl.cert_path})")
    print()

    if result.warnings:
        print(f"  WARNINGS ({len(result.warnings)})")
        print("  " + "-" * 8)
        for w in result.warnings:
            print(f"  {w}")
        print()

    print("=" * 70)
    if result.has_required_failures():
        print("  STATUS: FATAL")
        for e in result.errors:
            print(f"  {e}")
    elif result.warnings:
        print("  STATUS: DEGRADED - Running with reduced capabilities")
    else:
        print("  STATUS: READY - All systems operational")
    print("=" * 70)
    print()


# =============================================================================
# Main Preflight Function
# =============================================================================

def run(verbose: bool = True, config_dir: str = CONFIG_DIR) -> PreflightResult:
    """
    Run all preflight checks.

    Args:
        verbose: Print the startup summary
        config_dir: Directory holding the TLS cert/key

    Returns:
        PreflightResult with dependency status and selected configurations.
        Callers decide what to do with has_required_failures().
    """
    result = PreflightResult()

    # === Phase 1: Python version ===
    result.python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    if sys.version_info < MIN_PYTHON:
        result.add_error(f"Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ required, found {result.python_version}")

    # === Phase 2: Platform detection ===
    result.platform = get_platform()
    result.display_server = get_display_server()
    result.arch = _platform.machine()

    # === Phase 3: Dependencies ===
    for dep_type in (DepType.REQUIRED, DepType.OPTIONAL):
        for dep in DEPENDENCIES:
            if dep.dep_type == dep_type:
                check_dependency(dep, result)

    if result.has_required_failures():
        if verbose:
            print_summary(result)
            print("\nTo fix, run:")
            for dep in DEPENDENCIES:
                if dep.dep_type == DepType.REQUIRED and not result.is_available(dep.name):
                    print(f"  {dep.install_hint}")
        return result

    # === Phase 4: Select configurations ===
    result.input_control = select_input(result)
    result.ssl = select_ssl(result, config_dir)

    if verbose:
        print_summary(result)

    return result


# =============================================================================
# CLI Entry Point
# =============================================================================

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Run Glide preflight checks")
    parser.add_argument("--config-dir", default=CONFIG_DIR)
    args = parser.parse_args()

    result = run(config_dir=args.config_dir)
    sys.exit(1 if result.has_required_failures() else 0)
