"""
Tests for shared helpers: log location and config dir JSON
"""

import os

import glide_common


def test_log_file_defaults_to_config_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(glide_common, "_logger", None)
    monkeypatch.setattr(glide_common, "CONFIG_DIR", str(tmp_path))
    logger = glide_common.setup_logging(name="glide-default-dir")
    try:
        logger.debug("hello")
        log_dir = tmp_path / "logs"
        assert log_dir.is_dir()
        assert any(name.startswith("glide_") for name in os.listdir(log_dir))
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


def test_server_id_is_stable(tmp_path):
    first = glide_common.get_server_id(str(tmp_path))
    assert first == glide_common.get_server_id(str(tmp_path))
    assert glide_common.load_json(str(tmp_path / "config.json"))["server_id"] == first
