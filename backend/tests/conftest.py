import importlib
import sys
from pathlib import Path

import pytest
import yaml
from fastapi.testclient import TestClient

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


def _reload_app_modules():
    """
    Reload backend modules so they pick up environment overrides for PL_CONFIG
    and the device port. This keeps tests isolated without relying on global
    singletons from a previous import.
    """
    module_names = [
        "plotlink.config",
        "plotlink.main",
    ]
    for name in module_names:
        if name in sys.modules:
            importlib.reload(sys.modules[name])
        else:
            importlib.import_module(name)


def _write_config(cfg_path: Path, overrides):
    data = {
        "device": {"reconnect_interval": 0.05, "liveness_interval": 0.05},
        "plot": {"max_payload_bytes": 64 * 1024},
    }
    for section, values in (overrides or {}).items():
        data.setdefault(section, {}).update(values)
    cfg_path.write_text(yaml.safe_dump(data), encoding="utf-8")


@pytest.fixture()
def config_overrides():
    return {}


@pytest.fixture()
def device_port():
    """Fixed device port for the supervisor; None means auto-discovery."""
    return None


@pytest.fixture()
def temp_env(tmp_path, monkeypatch, config_overrides, device_port):
    """
    Provide an isolated config file for each test.
    """
    cfg_path = tmp_path / "config" / "config.yaml"
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    _write_config(cfg_path, config_overrides)

    monkeypatch.setenv("PL_CONFIG", str(cfg_path))
    if device_port:
        monkeypatch.setenv("PLOTLINK_DEVICE", device_port)
    else:
        monkeypatch.delenv("PLOTLINK_DEVICE", raising=False)

    # Never touch real hardware during tests
    import plotlink.device_supervisor as device_supervisor
    monkeypatch.setattr(device_supervisor, "list_ebb_ports", lambda: [])
    import plotlink.wake_lock as wake_lock
    monkeypatch.setattr(wake_lock, "_inhibitor_command", _no_wake_lock)

    _reload_app_modules()
    yield


def _no_wake_lock(reason):
    from plotlink.wake_lock import WakeLockError
    raise WakeLockError("disabled in tests")


@pytest.fixture()
def client(temp_env):
    import plotlink.main as main

    with TestClient(main.app) as c:
        yield c
