"""
Device handle for an EiBotBoard (EBB) driven pen plotter.

One EBBDevice wraps one open serial session. It becomes permanently dead
once the link closes or an I/O call fails; reconnecting means opening a
new handle.
"""
import asyncio
import logging
import platform
from typing import List, Optional

import serial
import serial.tools.list_ports

from .plotter_models import Block, Motion, PenMotion, XYMotion
from .plotter_simulator import PlotterSimulator, SIMULATOR_PORT_NAME

logger = logging.getLogger(__name__)

EBB_VENDOR_ID = 0x04D8
EBB_PRODUCT_ID = 0xFD92

# AxiDraw geometry: motor steps per millimetre at full step
STEPS_PER_MM = 5

DEFAULT_MICROSTEPPING_MODE = 2

IDLE_POLL_SECONDS = 0.05


class DeviceError(Exception):
    """Raised on any connection error."""
    def __init__(self, msg, cause=None):
        super().__init__(msg)
        self.cause = cause


def _is_ebb(port_info) -> bool:
    if port_info.vid == EBB_VENDOR_ID and port_info.pid == EBB_PRODUCT_ID:
        return True
    text = f"{port_info.description or ''} {port_info.manufacturer or ''}"
    return "eibotboard" in text.lower()


def list_ebb_ports() -> List[str]:
    """Return serial port paths that look like an attached EBB."""
    return [p.device for p in serial.tools.list_ports.comports() if _is_ebb(p)]


def _open_serial(path: str, baudrate: int, timeout: float):
    if path == SIMULATOR_PORT_NAME:
        return PlotterSimulator(path, baudrate, timeout=timeout)
    _disable_ttyhup(path)
    try:
        return serial.Serial(path, baudrate, timeout=timeout)
    except (serial.SerialException, OSError) as e:
        raise DeviceError(f"Could not connect to serial port '{path}'", e) from e


def steps_per_mm(microstepping_mode: int) -> int:
    """Axis steps per millimetre for an EM microstepping mode (1 = 16x ... 5 = full step)."""
    if not 1 <= microstepping_mode <= 5:
        raise ValueError(f"Invalid microstepping mode: {microstepping_mode}")
    return STEPS_PER_MM * 2 ** (5 - microstepping_mode)


def _disable_ttyhup(path: str):
    """Disable HUPCL on Linux so closing the port does not reset the board."""
    if platform.system() == "Linux":
        import os
        try:
            os.system(f"stty -F {path} -hup 2>/dev/null")
        except OSError:
            pass  # Best effort, may fail on some systems


class EBBDevice:
    """Async command interface to one open EBB session."""

    def __init__(self, port, liveness_interval: float = 1.0):
        self._port = port
        self._path = port.port
        self._liveness_interval = liveness_interval
        self._lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self._error: Optional[BaseException] = None
        self._steps_per_mm = steps_per_mm(DEFAULT_MICROSTEPPING_MODE)
        # Fractional step remainder carried between XY blocks
        self._residual_x = 0.0
        self._residual_y = 0.0

    @classmethod
    async def open(cls, path: str, baudrate: int = 9600, timeout: float = 1.0,
                   liveness_interval: float = 1.0) -> "EBBDevice":
        """Open the serial port at ``path``.

        Raises:
            DeviceError: If the port cannot be opened.
        """
        port = await asyncio.to_thread(_open_serial, path, baudrate, timeout)
        device = cls(port, liveness_interval=liveness_interval)
        logger.info("Opened EBB at %s", path)
        return device

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_alive(self) -> bool:
        return not self._closed.is_set() and getattr(self._port, "is_open", False)

    def _mark_dead(self, error: Optional[BaseException] = None):
        if self._closed.is_set():
            return
        self._error = error
        self._closed.set()
        try:
            self._port.close()
        except (serial.SerialException, OSError) as e:
            logger.debug("Error closing %s: %s", self._path, e)

    async def close(self):
        """Close the link; the handle is unusable afterwards."""
        self._mark_dead()

    async def wait_closed(self):
        """Resolve once the link has closed, errored, or the port vanished."""
        while not self._closed.is_set():
            try:
                await asyncio.wait_for(self._closed.wait(), timeout=self._liveness_interval)
            except asyncio.TimeoutError:
                if not getattr(self._port, "is_open", False):
                    self._mark_dead()
                elif self._path != SIMULATOR_PORT_NAME and not await self._port_present():
                    logger.warning("Serial port %s is no longer present", self._path)
                    self._mark_dead()

    async def _port_present(self) -> bool:
        try:
            ports = await asyncio.to_thread(serial.tools.list_ports.comports)
        except OSError as e:
            logger.debug("Port enumeration failed: %s", e)
            return True
        return any(p.device == self._path for p in ports)

    async def _io(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (serial.SerialException, OSError, RuntimeError) as e:
            self._mark_dead(e)
            raise DeviceError(f"Serial I/O failed on '{self._path}'", e) from e

    async def _read_response(self, cmd: str) -> str:
        while True:
            if not self.is_alive:
                raise DeviceError(f"Connection to '{self._path}' lost while waiting for '{cmd}'", self._error)
            raw = await self._io(self._port.readline)
            if not raw:
                # Read timeout; the board may still be busy filling its FIFO
                continue
            line = raw.decode("ascii", errors="ignore").strip()
            if not line:
                continue
            if line.startswith("!"):
                raise DeviceError(f"EBB rejected '{cmd}': {line}")
            return line

    async def command(self, cmd: str) -> None:
        """Send a command and wait for its OK acknowledgement."""
        async with self._lock:
            await self._io(self._port.write, f"{cmd}\r".encode("ascii"))
            line = await self._read_response(cmd)
            if line != "OK":
                raise DeviceError(f"Unexpected response to '{cmd}': {line}")

    async def query(self, cmd: str) -> str:
        """Send a query command and return its reply line."""
        async with self._lock:
            await self._io(self._port.write, f"{cmd}\r".encode("ascii"))
            return await self._read_response(cmd)

    async def enable_motors(self, microstepping_mode: int):
        steps = steps_per_mm(microstepping_mode)
        await self.command(f"EM,{microstepping_mode},{microstepping_mode}")
        self._steps_per_mm = steps

    async def disable_motors(self):
        await self.command("EM,0,0")

    async def set_pen_height(self, height: int, rate: int, delay: int = 0):
        await self.command(f"S2,{height},4,{rate},{delay}")

    async def execute_motion(self, motion: Motion):
        if isinstance(motion, PenMotion):
            await self._execute_pen_motion(motion)
        elif isinstance(motion, XYMotion):
            for block in motion.blocks:
                await self._execute_block(block)
        else:
            raise DeviceError(f"Unsupported motion type: {type(motion).__name__}")

    async def _execute_pen_motion(self, motion: PenMotion):
        duration_ms = round(motion.duration() * 1000)
        # Servo rate is in position units per 24ms
        distance = abs(motion.final_pos - motion.initial_pos)
        rate = round(distance * 24 / duration_ms) if duration_ms > 0 else 0
        await self.set_pen_height(motion.final_pos, rate, duration_ms)

    async def _execute_block(self, block: Block):
        # XM takes axis steps; the firmware does the CoreXY motor mixing
        dx = (block.p2.x - block.p1.x) * self._steps_per_mm + self._residual_x
        dy = (block.p2.y - block.p1.y) * self._steps_per_mm + self._residual_y
        steps_x = round(dx)
        steps_y = round(dy)
        self._residual_x = dx - steps_x
        self._residual_y = dy - steps_y
        duration_ms = max(1, round(block.duration * 1000))
        await self.command(f"XM,{duration_ms},{steps_x},{steps_y}")

    async def wait_until_motors_idle(self):
        while True:
            reply = await self.query("QM")
            fields = reply.split(",")
            if fields[0] != "QM":
                raise DeviceError(f"Unexpected response to 'QM': {reply}")
            if all(f.strip() == "0" for f in fields[1:]):
                return
            await asyncio.sleep(IDLE_POLL_SECONDS)
