import asyncio
import functools
import logging
from typing import Awaitable, Callable, List, Optional

from .notification_hub import NotificationHub
from .plotter_device import EBBDevice, list_ebb_ports
from .plotter_models import dev_message

logger = logging.getLogger(__name__)


class DeviceSupervisor:
    """Keeps at most one EBB session open, reconnecting forever.

    The supervisor is the only writer of the current device. Each edge
    (absent -> connected, connected -> absent) is broadcast as a ``dev``
    message through the hub.
    """

    def __init__(
        self,
        hub: NotificationHub,
        port: Optional[str] = None,
        baudrate: int = 9600,
        timeout: float = 1.0,
        reconnect_interval: float = 5.0,
        liveness_interval: float = 1.0,
        discover: Optional[Callable[[], List[str]]] = None,
        opener: Optional[Callable[[str], Awaitable[EBBDevice]]] = None,
    ) -> None:
        self._hub = hub
        self._fixed_port = port
        self._reconnect_interval = reconnect_interval
        self._discover = discover or list_ebb_ports
        self._opener = opener or functools.partial(
            EBBDevice.open, baudrate=baudrate, timeout=timeout, liveness_interval=liveness_interval
        )
        self._device: Optional[EBBDevice] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def device(self) -> Optional[EBBDevice]:
        return self._device

    @property
    def device_path(self) -> Optional[str]:
        return self._device.path if self._device is not None else None

    def current_state(self):
        return dev_message(self.device_path)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="device-supervisor")
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._device is not None:
            await self._device.close()
            self._device = None

    async def run(self) -> None:
        """Reconnect loop; only returns when cancelled."""
        while True:
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Error connecting to EBB: {exc}")
                logger.error(f"Retrying in {self._reconnect_interval:g} seconds...")
                await asyncio.sleep(self._reconnect_interval)

    async def _connect_once(self) -> None:
        path = self._fixed_port or await self._wait_for_candidate()
        logger.info(f"Found EBB at {path}")
        device = await self._opener(path)
        await self._publish(device)
        try:
            await device.wait_closed()
        finally:
            await device.close()
            await self._publish(None)
        logger.error("Lost connection to EBB, reconnecting...")

    async def _wait_for_candidate(self) -> str:
        while True:
            candidates = await asyncio.to_thread(self._discover)
            if candidates:
                return candidates[0]
            await asyncio.sleep(self._reconnect_interval)

    async def _publish(self, device: Optional[EBBDevice]) -> None:
        self._device = device
        await self._hub.broadcast(self.current_state())
