"""
Tests for startup checks: dependency registry, input backend and TLS selection
"""

import pytest

import preflight
from preflight import (
    Dependency, DepType, DependencyStatus, PreflightResult, select_input, select_ssl,
)


def _result(platform, display="n/a", pynput=True):
    result = PreflightResult(platform=platform, display_server=display)
    result.dependencies["pynput"] = DependencyStatus("pynput", DepType.OPTIONAL, pynput)
    return result


@pytest.fixture
def stdlib_deps(monkeypatch):
    deps = [
        Dependency(name="json", dep_type=DepType.REQUIRED, import_name="json"),
        Dependency(name="shelve", dep_type=DepType.OPTIONAL, import_name="shelve"),
    ]
    monkeypatch.setattr(preflight, "DEPENDENCIES", deps)
    monkeypatch.setattr(preflight, "get_platform", lambda: "linux")
    monkeypatch.setattr(preflight, "get_display_server", lambda: "x11")
    return deps


class TestRun:

    def test_all_present(self, stdlib_deps, tmp_path):
        result = preflight.run(verbose=False, config_dir=str(tmp_path))
        assert not result.has_required_failures()
        assert result.platform == "linux"
        assert result.dependencies["json"].available
        assert result.ssl.type == "generate"

    def test_missing_required_dependency_fails(self, stdlib_deps, tmp_path):
        stdlib_deps.append(Dependency(name="nope", dep_type=DepType.REQUIRED,
                                      import_name="glide_module_that_does_not_exist",
                                      install_hint="pip install nope"))
        result = preflight.run(verbose=False, config_dir=str(tmp_path))
        assert result.has_required_failures()
        assert result.ssl is None
        assert any("nope" in e for e in result.errors)

    def test_missing_optional_dependency_only_warns(self, stdlib_deps, tmp_path):
        stdlib_deps.append(Dependency(name="extra", dep_type=DepType.OPTIONAL,
                                      import_name="glide_module_that_does_not_exist",
                                      fallback="extra feature off"))
        result = preflight.run(verbose=False, config_dir=str(tmp_path))
        assert not result.has_required_failures()
        assert any("extra feature off" in w for w in result.warnings)

    def test_old_python_fails(self, stdlib_deps, tmp_path, monkeypatch):
        monkeypatch.setattr(preflight, "MIN_PYTHON", (99, 0))
        result = preflight.run(verbose=False, config_dir=str(tmp_path))
        assert result.has_required_failures()

    def test_summary_prints(self, stdlib_deps, tmp_path, capsys):
        preflight.run(verbose=True, config_dir=str(tmp_path))
        assert "GLIDE PREFLIGHT CHECK" in capsys.readouterr().out


class TestSelectInput:

    def test_x11_uses_pynput(self):
        assert select_input(_result("linux", "x11")).type == "pynput"

    def test_wayland_disables_input(self):
        result = _result("linux", "wayland")
        assert select_input(result).type is None
        assert result.warnings

    def test_headless_linux_disables_input(self):
        assert select_input(_result("linux", "unknown")).type is None

    def test_missing_pynput(self):
        assert select_input(_result("windows", pynput=False)).type is None

    def test_macos_without_accessibility(self, monkeypatch):
        monkeypatch.setattr(preflight, "_check_macos_accessibility", lambda: False)
        config = select_input(_result("macos"))
        assert config.type == "pynput" and config.needs_permission

    def test_macos_with_accessibility(self, monkeypatch):
        monkeypatch.setattr(preflight, "_check_macos_accessibility", lambda: True)
        config = select_input(_result("macos"))
        assert config.type == "pynput" and not config.needs_permission


class TestSelectSsl:

    def test_generate_when_missing(self, tmp_path):
        assert select_ssl(PreflightResult(), str(tmp_path)).type == "generate"

    def test_reuse_existing(self, tmp_path):
        (tmp_path / "cert.pem").write_text("cert")
        (tmp_path / "key.pem").write_text("key")
        config = select_ssl(PreflightResult(), str(tmp_path))
        assert config.type == "existing"
        assert config.cert_path == str(tmp_path / "cert.pem")
