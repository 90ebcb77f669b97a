"""Return-trigger detectors.

Each detector watches one device in a worker thread and only ever writes to
the signal sink. A failing detector ends itself; it never takes the
coordinator down with it.
"""

import asyncio
import glob
import os
import select
import shutil
import struct
import subprocess
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional
import logging

import serial

from booter.config import BooterConfig
from booter.errors import ChannelError
from booter.models.signal import SignalKind
from booter.models.status import PhaseEnum

# linux/input-event-codes.h
EV_KEY = 0x01
KEY_LEFTCTRL = 29
KEY_RIGHTCTRL = 97
KEY_LEFTALT = 56
KEY_RIGHTALT = 100
KEY_F12 = 88

# struct input_event: timeval (2 longs), type, code, value
EVENT_FORMAT = "llHHi"
EVENT_SIZE = struct.calcsize(EVENT_FORMAT)

F12_SCANCODE_PRESS = "0x58"
F12_SCANCODE_RELEASE = "0xd8"
F12_ESCAPE = b"\x1b[24~"
CONSOLE_BUFFER_LIMIT = 100

POLL_INTERVAL = 0.5
SHOWKEY_RESTART_DELAY = 1.0

SignalSink = Callable[[SignalKind, str], None]
PhaseReader = Callable[[], PhaseEnum]


class ComboTracker:
    """Ctrl+Alt+F12 recognizer over key events.

    Fires once per physical press: only the press edge (value 1) of F12
    counts, auto-repeat (2) and release (0) are ignored.
    """

    CTRL = (KEY_LEFTCTRL, KEY_RIGHTCTRL)
    ALT = (KEY_LEFTALT, KEY_RIGHTALT)

    def __init__(self):
        self.held: set[int] = set()

    @property
    def ctrl(self) -> bool:
        return any(code in self.held for code in self.CTRL)

    @property
    def alt(self) -> bool:
        return any(code in self.held for code in self.ALT)

    def feed(self, ev_type: int, code: int, value: int) -> bool:
        if ev_type != EV_KEY:
            return False
        if code in self.CTRL or code in self.ALT:
            if value == 0:
                self.held.discard(code)
            else:
                self.held.add(code)
        elif code == KEY_F12 and value == 1:
            return self.ctrl and self.alt
        return False


class ScanCodeMatcher:
    """Bare F12 scan code recognizer for ``showkey -s`` output.

    A held key repeats its make code; after a hit the matcher stays
    disarmed until the break code arrives.
    """

    def __init__(self):
        self.armed = True

    def feed(self, line: str) -> bool:
        fired = False
        for token in line.split():
            token = token.lower()
            if token == F12_SCANCODE_PRESS and self.armed:
                self.armed = False
                fired = True
            elif token == F12_SCANCODE_RELEASE:
                self.armed = True
        return fired


class EscapeSequenceMatcher:
    """Find the F12 terminal escape sequence in a raw console byte stream."""

    def __init__(self, sequence: bytes = F12_ESCAPE, limit: int = CONSOLE_BUFFER_LIMIT):
        self.sequence = sequence
        self.limit = limit
        self.buffer = bytearray()

    def feed(self, data: bytes) -> int:
        """Returns the number of complete sequences seen in data."""
        hits = 0
        for byte in data:
            self.buffer.append(byte)
            if self.buffer.endswith(self.sequence):
                hits += 1
                self.buffer.clear()
            elif len(self.buffer) >= self.limit:
                self.buffer.clear()
        return hits


class DetectorHandle:
    """Running detector: its task plus the event that asks it to stop."""

    def __init__(self, detector: "Detector", task: asyncio.Task, stop_event: threading.Event):
        self.detector = detector
        self.task = task
        self.stop_event = stop_event

    @property
    def running(self) -> bool:
        return not self.task.done()

    async def stop(self, timeout: float = 2.0) -> None:
        """Stop the detector; a thread stuck in a device read is abandoned after timeout."""
        self.stop_event.set()
        if self.task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self.task), timeout)
        except asyncio.TimeoutError:
            self.detector.logger.warning(f"{self.detector.device}: did not stop in {timeout}s")

    async def restart(self, sink: SignalSink) -> "DetectorHandle":
        await self.stop()
        return self.detector.start(sink)


class Detector(ABC):
    """One event source for return requests."""

    name = "detector"
    degraded = False

    def __init__(self, device: str):
        self.device = device
        self.logger = logging.getLogger(f"booter.detectors.{self.name}")

    def available(self) -> bool:
        return os.access(self.device, os.R_OK)

    def start(self, sink: SignalSink) -> DetectorHandle:
        """Start watching in the running event loop."""
        stop_event = threading.Event()
        task = asyncio.create_task(
            self._supervise(sink, stop_event), name=f"detector:{self.name}:{self.device}"
        )
        return DetectorHandle(self, task, stop_event)

    async def _supervise(self, sink: SignalSink, stop_event: threading.Event) -> None:
        self.logger.info(f"Monitoring {self.device}")
        try:
            await asyncio.to_thread(self.watch, sink, stop_event)
        except OSError as e:
            self.logger.warning(f"{self.device}: {e}, detector stopped")
        except Exception:
            self.logger.exception(f"{self.device}: detector crashed")
        else:
            self.logger.info(f"Stopped monitoring {self.device}")

    def fire(self, sink: SignalSink, kind: SignalKind = SignalKind.RETURN) -> None:
        self.logger.info("Magic key detected! Signaling return to bootstrap...")
        try:
            sink(kind, self.name)
        except ChannelError as e:
            self.logger.warning(f"Return FIFO not available: {e}")

    @abstractmethod
    def watch(self, sink: SignalSink, stop_event: threading.Event) -> None:
        """Blocking read loop; returns when stop_event is set or the device ends."""


class EventDeviceDetector(Detector):
    """Ctrl+Alt+F12 on one evdev keyboard."""

    name = "evdev"

    def __init__(self, device: str):
        super().__init__(device)
        self.tracker = ComboTracker()

    @staticmethod
    def is_keyboard(device: str, sysfs: str = "/sys/class/input") -> bool:
        """Check the device's key capability bitmap for F12, Ctrl and Alt.

        The sysfs bitmap is a list of hex longs, most significant first.
        """
        caps = Path(sysfs) / Path(device).name / "device" / "capabilities" / "key"
        try:
            words = caps.read_text().split()
        except OSError:
            return False

        word_bits = struct.calcsize("l") * 8
        bits = 0
        for word in words:
            bits = (bits << word_bits) | int(word, 16)
        return all(bits >> code & 1 for code in (KEY_F12, KEY_LEFTCTRL, KEY_LEFTALT))

    def watch(self, sink: SignalSink, stop_event: threading.Event) -> None:
        self.tracker = ComboTracker()
        fd = os.open(self.device, os.O_RDONLY | os.O_NONBLOCK)
        pending = b""
        try:
            while not stop_event.is_set():
                ready, _, _ = select.select([fd], [], [], POLL_INTERVAL)
                if not ready:
                    continue
                try:
                    data = os.read(fd, EVENT_SIZE * 64)
                except BlockingIOError:
                    continue
                if not data:
                    self.logger.warning(f"{self.device} closed")
                    return

                pending += data
                usable = len(pending) - len(pending) % EVENT_SIZE
                for offset in range(0, usable, EVENT_SIZE):
                    _sec, _usec, ev_type, code, value = struct.unpack_from(
                        EVENT_FORMAT, pending, offset
                    )
                    if self.tracker.feed(ev_type, code, value):
                        self.fire(sink)
                pending = pending[usable:]
        finally:
            os.close(fd)


class LegacyKeycodeDetector(Detector):
    """Bare F12 via ``showkey -s`` on one tty.

    Degraded fallback for kernels without evdev: no modifier tracking.
    showkey exits 0 after ten idle seconds and is restarted until stopped;
    any other exit ends the detector.
    """

    name = "showkey"
    degraded = True

    def available(self) -> bool:
        return super().available() and shutil.which("showkey") is not None

    def watch(self, sink: SignalSink, stop_event: threading.Event) -> None:
        matcher = ScanCodeMatcher()
        while not stop_event.is_set():
            with open(self.device, "rb") as tty:
                proc = subprocess.Popen(
                    ["showkey", "-s"],
                    stdin=tty,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.DEVNULL,
                )
            try:
                self._read_scancodes(proc, matcher, sink, stop_event)
                returncode = self._reap(proc, terminate=stop_event.is_set())
            finally:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
                proc.stdout.close()

            if stop_event.is_set():
                return
            if returncode != 0:
                raise OSError(f"showkey -s exited {returncode}")
            stop_event.wait(SHOWKEY_RESTART_DELAY)

    @staticmethod
    def _reap(proc: subprocess.Popen, terminate: bool) -> int:
        if terminate:
            proc.terminate()
        try:
            return proc.wait(timeout=POLL_INTERVAL * 4)
        except subprocess.TimeoutExpired:
            proc.kill()
            return proc.wait()

    def _read_scancodes(
        self,
        proc: subprocess.Popen,
        matcher: ScanCodeMatcher,
        sink: SignalSink,
        stop_event: threading.Event,
    ) -> None:
        fd = proc.stdout.fileno()
        pending = b""
        while not stop_event.is_set():
            ready, _, _ = select.select([fd], [], [], POLL_INTERVAL)
            if not ready:
                continue
            data = os.read(fd, 1024)
            if not data:
                return
            pending += data
            *lines, pending = pending.split(b"\n")
            for line in lines:
                if matcher.feed(line.decode("ascii", errors="ignore")):
                    self.fire(sink)


class RawConsoleDetector(Detector):
    """F12 escape sequence on the system console.

    Presses while Bootstrap is live are logged and dropped.
    """

    name = "console"

    def __init__(self, device: str, phase_reader: PhaseReader):
        super().__init__(device)
        self.phase_reader = phase_reader

    def watch(self, sink: SignalSink, stop_event: threading.Event) -> None:
        matcher = EscapeSequenceMatcher()
        fd = os.open(self.device, os.O_RDONLY | os.O_NONBLOCK | os.O_NOCTTY)
        try:
            while not stop_event.is_set():
                ready, _, _ = select.select([fd], [], [], POLL_INTERVAL)
                if not ready:
                    continue
                try:
                    data = os.read(fd, 256)
                except BlockingIOError:
                    continue
                if not data:
                    return
                for _ in range(matcher.feed(data)):
                    if self.phase_reader() == PhaseEnum.BOOTSTRAP:
                        self.logger.info("F12 pressed in bootstrap mode - ignoring")
                    else:
                        self.fire(sink)
        finally:
            os.close(fd)


class SerialDetector(Detector):
    """Magic token on a serial line."""

    name = "serial"

    def __init__(self, device: str, token: str, baudrate: int = 115200):
        super().__init__(device)
        self.token = token
        self.baudrate = baudrate

    @classmethod
    def first_available(
        cls, devices: list[str], token: str, baudrate: int = 115200
    ) -> Optional["SerialDetector"]:
        for device in devices:
            detector = cls(device, token, baudrate)
            if os.path.exists(device) and detector.available():
                return detector
        return None

    def watch(self, sink: SignalSink, stop_event: threading.Event) -> None:
        pending = b""
        # pyserial puts the line in raw mode; read() returns after the timeout
        with serial.Serial(self.device, self.baudrate, timeout=POLL_INTERVAL) as port:
            while not stop_event.is_set():
                data = port.read(port.in_waiting or 1)
                if not data:
                    continue
                pending += data.replace(b"\r", b"\n")
                *lines, pending = pending.split(b"\n")
                for line in lines:
                    if self.token in line.decode("utf-8", errors="replace"):
                        self.logger.info("Magic string detected on serial!")
                        self.fire(sink)


class DetectorSupervisor:
    """Starts, stops and restarts the whole detector set."""

    def __init__(
        self,
        config: BooterConfig,
        sink: SignalSink,
        phase_reader: PhaseReader,
        factory: Optional[Callable[[], list[Detector]]] = None,
    ):
        """Initialize detector supervisor.

        Args:
            config: Device paths, serial settings and magic token
            sink: Producer side of the signal bus
            phase_reader: Current phase (console presses are dropped in bootstrap)
            factory: Overrides device discovery (tests)
        """
        self.logger = logging.getLogger("booter.detectors")
        self.config = config
        self.sink = sink
        self.phase_reader = phase_reader
        self.factory = factory or self.discover
        self._handles: list[DetectorHandle] = []

    @property
    def handles(self) -> list[DetectorHandle]:
        return list(self._handles)

    def running_count(self) -> int:
        return sum(1 for handle in self._handles if handle.running)

    def discover(self) -> list[Detector]:
        """Every detector variant whose device is present and readable."""
        detectors: list[Detector] = []
        for device in sorted(glob.glob(self.config.input_device_glob)):
            if EventDeviceDetector.is_keyboard(device):
                detectors.append(EventDeviceDetector(device))

        if shutil.which("showkey"):
            for tty in sorted(glob.glob(self.config.tty_glob)):
                detectors.append(LegacyKeycodeDetector(tty))

        detectors.append(RawConsoleDetector(self.config.console_device, self.phase_reader))

        serial_detector = SerialDetector.first_available(
            self.config.serial_devices, self.config.magic_token, self.config.serial_baudrate
        )
        if serial_detector is not None:
            detectors.append(serial_detector)

        return [detector for detector in detectors if detector.available()]

    async def start_all(self) -> int:
        """Start every available detector.

        Returns:
            Number of detectors started
        """
        if self._handles:
            await self.stop_all()

        for detector in self.factory():
            self._handles.append(detector.start(self.sink))
            if detector.degraded:
                self.logger.warning(f"{detector.device}: degraded detector ({detector.name})")

        self.logger.info(f"Hotkey monitoring active ({len(self._handles)} detectors)")
        self.logger.info("Press Ctrl+Alt+F12 in target system to return to bootstrap")
        return len(self._handles)

    async def stop_all(self) -> None:
        for handle in self._handles:
            await handle.stop()
        self._handles.clear()

    async def restart_all(self) -> int:
        await self.stop_all()
        return await self.start_all()
