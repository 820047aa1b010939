import yaml


def _load_config():
    # Imported lazily: the module builds a default Config from PL_CONFIG on import
    from plotlink.config import Config
    return Config()


def test_missing_file_is_created_with_defaults(tmp_path, monkeypatch):
    cfg_path = tmp_path / "nested" / "config.yaml"
    monkeypatch.setenv("PL_CONFIG", str(cfg_path))
    monkeypatch.delenv("PLOTLINK_DEVICE", raising=False)

    cfg = _load_config()

    assert cfg_path.exists()
    written = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
    assert written["device"]["reconnect_interval"] == 5.0
    assert cfg.device_port is None
    assert cfg.max_payload_bytes == 100 * 1024 * 1024
    assert cfg.pen_servo_min == 7500
    assert written["websocket"] == {"ping_interval": 20.0, "ping_timeout": 20.0}
    assert cfg.ws_ping_interval == 20.0
    assert cfg.ws_ping_timeout == 20.0


def test_values_and_env_override(tmp_path, monkeypatch):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(yaml.safe_dump({
        "device": {"port": "/dev/ttyACM3", "reconnect_interval": 2},
        "plot": {"max_payload_bytes": 1024},
        "websocket": {"ping_interval": 5},
    }), encoding="utf-8")
    monkeypatch.setenv("PL_CONFIG", str(cfg_path))
    monkeypatch.delenv("PLOTLINK_DEVICE", raising=False)

    cfg = _load_config()
    assert cfg.device_port == "/dev/ttyACM3"
    assert cfg.reconnect_interval == 2
    assert cfg.max_payload_bytes == 1024
    assert cfg.ws_ping_interval == 5
    assert cfg.ws_ping_timeout == 20.0
    assert cfg.get("device.missing.key", "fallback") == "fallback"

    monkeypatch.setenv("PLOTLINK_DEVICE", "SIMULATOR")
    assert cfg.device_port == "SIMULATOR"
