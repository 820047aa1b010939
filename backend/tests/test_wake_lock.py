import asyncio
import subprocess
import time

import plotlink.wake_lock as wake_lock
from plotlink.wake_lock import WakeLock, WakeLockError


class FakeProcess:
    def __init__(self, command, wait_seconds=0.0, **kwargs):
        self.command = command
        self.returncode = None
        self.terminated = False
        self.wait_seconds = wait_seconds

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def wait(self, timeout=None):
        time.sleep(self.wait_seconds)
        return self.returncode

    def kill(self):
        self.returncode = -9


def _hold(reason="plotting", body=None):
    async def run():
        async with WakeLock(reason) as lock:
            held = lock.held
            if body is not None:
                await body()
        return lock, held

    return asyncio.run(run())


def test_lock_is_held_and_released(monkeypatch):
    started = []

    def fake_popen(command, **kwargs):
        started.append(FakeProcess(command, **kwargs))
        return started[-1]

    monkeypatch.setattr(wake_lock, "_inhibitor_command", lambda reason: ["inhibit", reason])
    monkeypatch.setattr(subprocess, "Popen", fake_popen)

    lock, held = _hold()
    assert held
    assert not lock.held
    assert started[0].command == ["inhibit", "plotting"]
    assert started[0].terminated


def test_release_happens_when_body_raises(monkeypatch):
    started = []
    monkeypatch.setattr(wake_lock, "_inhibitor_command", lambda reason: ["inhibit"])
    monkeypatch.setattr(subprocess, "Popen", lambda command, **kw: started.append(FakeProcess(command)) or started[-1])

    async def boom():
        raise ValueError("boom")

    try:
        _hold(body=boom)
    except ValueError:
        pass
    assert started[0].terminated


def test_slow_release_does_not_block_event_loop(monkeypatch):
    monkeypatch.setattr(wake_lock, "_inhibitor_command", lambda reason: ["inhibit"])
    monkeypatch.setattr(subprocess, "Popen", lambda command, **kw: FakeProcess(command, wait_seconds=0.3))

    async def run():
        ticks = []

        async def ticker():
            while True:
                ticks.append(time.monotonic())
                await asyncio.sleep(0.02)

        task = asyncio.create_task(ticker())
        await asyncio.sleep(0)
        async with WakeLock("plotting"):
            pass
        task.cancel()
        return ticks

    ticks = asyncio.run(run())
    # The loop kept ticking while the child process was being reaped
    assert len(ticks) >= 5


def test_missing_mechanism_is_not_fatal(monkeypatch, caplog):
    def unavailable(reason):
        raise WakeLockError("No keep-awake mechanism available on Plan9")

    monkeypatch.setattr(wake_lock, "_inhibitor_command", unavailable)

    lock, held = _hold()
    assert not held
    assert "Couldn't acquire wake lock" in caplog.text


def test_spawn_failure_is_not_fatal(monkeypatch, caplog):
    def failing_popen(command, **kwargs):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(wake_lock, "_inhibitor_command", lambda reason: ["missing-binary"])
    monkeypatch.setattr(subprocess, "Popen", failing_popen)

    lock, held = _hold()
    assert not held
    assert "Couldn't acquire wake lock" in caplog.text
