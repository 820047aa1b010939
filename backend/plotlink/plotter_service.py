import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from .notification_hub import NotificationHub
from .plotter_device import DeviceError, EBBDevice
from .plotter_models import (
    Plan,
    cancelled_message,
    failed_message,
    finished_message,
    format_duration,
    pen_pct_to_pos,
    progress_message,
)
from .wake_lock import WakeLock

# Servo rate/delay used for pen moves issued outside the plan
PEN_RATE = 1000
PEN_DELAY_MS = 1000

logger = logging.getLogger(__name__)


class PlotInProgressError(RuntimeError):
    """Raised when a plot is submitted while another one is running."""


class PlotterService:
    """Runs plans against a device (or a timed simulation) one at a time.

    Owns the cancellation flag: any client may set it, only the running
    plot reads and clears it.
    """

    def __init__(
        self,
        hub: NotificationHub,
        microstepping_mode: int = 2,
        pen_up_position: Optional[int] = None,
        wake_lock_factory: Callable[[str], Any] = WakeLock,
    ) -> None:
        self._hub = hub
        self._microstepping_mode = microstepping_mode
        self._pen_up_position = pen_up_position if pen_up_position is not None else pen_pct_to_pos(0)
        self._wake_lock_factory = wake_lock_factory
        self._cancel_requested = False
        self._active_task: Optional[asyncio.Task] = None
        self._active_plan: Optional[Plan] = None

    @property
    def plotting(self) -> bool:
        return self._active_task is not None and not self._active_task.done()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def get_status(self) -> Dict[str, Any]:
        return {
            "plotting": self.plotting,
            "estimated_duration_seconds": self._active_plan.duration() if self.plotting else None,
        }

    def request_cancel(self) -> None:
        """Ask the running plot to stop after its current motion."""
        self._cancel_requested = True

    def submit(self, plan: Plan, device: Optional[EBBDevice]) -> asyncio.Task:
        """Start ``plan`` in the background and return its task.

        Raises:
            PlotInProgressError: If a plot is already running.
        """
        if self.plotting:
            raise PlotInProgressError("A plot is already in progress")

        logger.info(f"Received plan of estimated duration {format_duration(plan.duration())}")
        logger.info("Beginning plot..." if device is not None else "Simulating plot...")
        self._active_plan = plan
        self._active_task = asyncio.create_task(self.run_plot(plan, device), name="plot")
        return self._active_task

    async def run_plot(self, plan: Plan, device: Optional[EBBDevice]) -> None:
        """Execute one plot request, reporting failure as a ``failed`` event."""
        begin = time.monotonic()
        async with self._wake_lock_factory("plotlink plotting"):
            try:
                if device is not None:
                    await self.do_plot(plan, device)
                else:
                    await self.simulate_plot(plan)
                logger.info(f"Plot took {format_duration(time.monotonic() - begin)}")
            except Exception as exc:
                logger.error("Plot failed: %s", exc, exc_info=not isinstance(exc, DeviceError))
                await self._hub.broadcast(failed_message(str(exc)))

    async def do_plot(self, plan: Plan, device: EBBDevice) -> None:
        completed = False
        try:
            await device.enable_motors(self._microstepping_mode)
            first_pen_motion = plan.first_pen_motion()
            initial_pen = first_pen_motion.initial_pos if first_pen_motion else self._pen_up_position
            await device.set_pen_height(initial_pen, PEN_RATE, PEN_DELAY_MS)

            self._cancel_requested = False
            for i, motion in enumerate(plan.motions):
                await self._hub.broadcast(progress_message(i))
                await device.execute_motion(motion)
                if self._cancel_requested:
                    break

            if self._cancel_requested:
                await device.set_pen_height(self._pen_up_position, PEN_RATE)
                await self._hub.broadcast(cancelled_message())
                self._cancel_requested = False
            else:
                await self._hub.broadcast(finished_message())
            completed = True
        finally:
            await self._release_motors(device, raise_errors=completed)

    async def simulate_plot(self, plan: Plan) -> None:
        self._cancel_requested = False
        total = len(plan.motions)
        for i, motion in enumerate(plan.motions):
            logger.debug(f"Motion {i + 1}/{total}")
            await self._hub.broadcast(progress_message(i))
            await asyncio.sleep(motion.duration())
            if self._cancel_requested:
                break

        if self._cancel_requested:
            await self._hub.broadcast(cancelled_message())
            self._cancel_requested = False
        else:
            await self._hub.broadcast(finished_message())

    async def _release_motors(self, device: EBBDevice, raise_errors: bool) -> None:
        """Wait for the motion queue to drain, then de-energize the motors.

        Disabling is attempted even if the idle wait fails or is cancelled.
        Errors are only raised when no other error is already propagating.
        """
        first_error: Optional[DeviceError] = None
        try:
            await device.wait_until_motors_idle()
        except DeviceError as exc:
            logger.error("Waiting for motors to idle failed: %s", exc)
            first_error = exc
        finally:
            try:
                await device.disable_motors()
            except DeviceError as exc:
                logger.error("Disabling motors failed: %s", exc)
                first_error = first_error or exc
        if first_error is not None and raise_errors:
            raise first_error

    async def wait_idle(self) -> None:
        """Wait for the running plot, if any, to finish."""
        if self._active_task is not None:
            await asyncio.gather(self._active_task, return_exceptions=True)

    async def shutdown(self) -> None:
        if self.plotting:
            self._active_task.cancel()
            await asyncio.gather(self._active_task, return_exceptions=True)
