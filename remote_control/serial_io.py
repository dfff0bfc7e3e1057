"""
Line-based control I/O.

Controller input, one update per line:
    A,<0|1>     button a
    B,<0|1>     button b
    P,<x>,<y>   trackpad, each in [-1, 1]

The receiver mirrors its state back out in the same format.
"""

import asyncio
import logging
import os
import stat
import sys
from typing import Any, Callable, Dict, List, Mapping, Optional

import serial

from . import config

logger = logging.getLogger(__name__)

BUTTONS = {"A": "a", "B": "b"}


def parse_input_line(line: str) -> Optional[Dict[str, Any]]:
    parts = [p.strip() for p in line.strip().split(",")]
    key = parts[0].upper()

    if key in BUTTONS and len(parts) == 2 and parts[1] in ("0", "1"):
        return {BUTTONS[key]: parts[1] == "1"}

    if key == "P" and len(parts) == 3:
        try:
            return {"trackpad": [float(parts[1]), float(parts[2])]}
        except ValueError:
            return None

    return None


def format_state_lines(state: Mapping[str, Any]) -> List[str]:
    lines = []
    for key, name in BUTTONS.items():
        if name in state:
            lines.append(f"{key},{int(bool(state[name]))}")
    if "trackpad" in state:
        x, y = state["trackpad"]
        lines.append(f"P,{x:.3f},{y:.3f}")
    return lines


def open_serial(port: str, baud: int = config.SERIAL_BAUD) -> serial.Serial:
    return serial.Serial(port, baud, timeout=0)


class SerialInput:
    """Polls a serial device and hands every parsed line to on_update."""

    def __init__(self, ser, on_update: Callable[[Dict[str, Any]], Any]):
        self.ser = ser
        self.on_update = on_update
        self._buf = ""

    def feed(self, text: str):
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            update = parse_input_line(line)
            if update is None:
                if line.strip():
                    logger.debug(f"ignored input line {line!r}")
                continue
            self.on_update(update)

    async def run(self):
        while True:
            if self.ser.in_waiting:
                self.feed(self.ser.read(self.ser.in_waiting).decode(errors="ignore"))
            await asyncio.sleep(config.SERIAL_POLL_INTERVAL)


class StdinInput(SerialInput):
    """Same line format, read from standard input until EOF."""

    def __init__(self, on_update: Callable[[Dict[str, Any]], Any], stream=None):
        super().__init__(None, on_update)
        self.stream = stream or sys.stdin

    async def run(self):
        if stat.S_ISREG(os.fstat(self.stream.fileno()).st_mode):
            # regular files cannot be watched by the event loop
            await self._run_blocking()
        else:
            await self._run_pipe()
        if self._buf:
            self.feed("\n")

    async def _run_pipe(self):
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, self.stream)

        while True:
            line = await reader.readline()
            if not line:
                return
            self.feed(line.decode(errors="ignore"))

    async def _run_blocking(self):
        while True:
            line = await asyncio.to_thread(self.stream.readline)
            if not line:
                return
            if isinstance(line, bytes):
                line = line.decode(errors="ignore")
            self.feed(line)


class SerialOutput:
    def __init__(self, ser):
        self.ser = ser

    def write_state(self, state: Mapping[str, Any]):
        for line in format_state_lines(state):
            self.ser.write((line + "\n").encode())
