"""
Plotter Simulator Module

Provides a simulated EiBotBoard that mimics the serial.Serial interface.
Every command is acknowledged the way EBB firmware does and logged, so the
hardware plot path can run without a machine attached.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

# Simulator port identifier
SIMULATOR_PORT_NAME = "SIMULATOR"

FIRMWARE_VERSION = "EBBv13_and_above EB Firmware Version 2.8.1"


class PlotterSimulator:
    """
    Simulates an EBB connection by mimicking the serial.Serial interface.
    Motor and pen state are tracked so callers can inspect what was sent.
    """

    def __init__(self, port: str, baudrate: int = 9600, timeout: Optional[float] = None):
        self._port = port
        self._is_open = True
        self._input_buffer: List[Tuple[str, str, str]] = []  # (response, command, timestamp)
        self.commands: List[str] = []
        self.motors_enabled = False
        self.pen_height: Optional[int] = None

        logger.info(f"[SIMULATOR] EBB simulator initialized on port '{port}' at {baudrate} baud")

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def port(self) -> str:
        return self._port

    def write(self, data: bytes) -> int:
        """
        Accept one or more carriage-return terminated EBB commands.

        Returns:
            Number of bytes written
        """
        if not self._is_open:
            raise RuntimeError("Simulator connection is closed")

        text = data.decode('utf-8', errors='ignore')
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        for command in filter(None, (part.strip() for part in text.split('\r'))):
            self.commands.append(command)
            response = self._generate_response(command)
            if response:
                self._input_buffer.append((response, command, timestamp))
        return len(data)

    def readline(self) -> bytes:
        """
        Read a line from the simulator's response buffer.

        Returns:
            Bytes containing the response line, or b'' when nothing is pending
        """
        if not self._is_open or not self._input_buffer:
            return b''

        response, command, timestamp = self._input_buffer.pop(0)
        logger.debug(f"[{timestamp}] -> {command} <- {response.strip()}")
        return response.encode('utf-8')

    def close(self) -> None:
        if self._is_open:
            self._is_open = False
            self._input_buffer.clear()
            logger.info(f"[SIMULATOR] Simulator connection closed on port '{self._port}'")

    def _generate_response(self, command: str) -> Optional[str]:
        parts = command.split(',')
        name = parts[0].upper()

        if name == "V":
            return FIRMWARE_VERSION + "\r\n"

        if name == "QM":
            # Moves complete instantly, so motors and FIFO are always idle
            return "QM,0,0,0,0\n\r"

        if name == "EM" and len(parts) >= 2:
            self.motors_enabled = parts[1].strip() != "0"
        elif name == "S2" and len(parts) >= 2:
            self.pen_height = int(parts[1])

        return "OK\r\n"
