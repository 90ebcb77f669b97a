"""Unit tests for the return-trigger detectors."""

import asyncio
import os
import struct
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from booter.errors import ChannelError
from booter.models.signal import SignalKind
from booter.models.status import PhaseEnum
from booter.services.detectors import (
    EVENT_FORMAT,
    EV_KEY,
    KEY_F12,
    KEY_LEFTALT,
    KEY_LEFTCTRL,
    KEY_RIGHTALT,
    KEY_RIGHTCTRL,
    ComboTracker,
    Detector,
    DetectorSupervisor,
    EscapeSequenceMatcher,
    EventDeviceDetector,
    LegacyKeycodeDetector,
    RawConsoleDetector,
    ScanCodeMatcher,
    SerialDetector,
)

EV_SYN = 0x00


def key(code: int, value: int) -> bytes:
    return struct.pack(EVENT_FORMAT, 0, 0, EV_KEY, code, value)


def syn() -> bytes:
    return struct.pack(EVENT_FORMAT, 0, 0, EV_SYN, 0, 0)


class IdleDetector(Detector):
    """Watches nothing until asked to stop."""

    name = "idle"

    def available(self):
        return True

    def watch(self, sink, stop_event):
        stop_event.wait(5)


class BrokenDetector(Detector):
    name = "broken"

    def available(self):
        return True

    def watch(self, sink, stop_event):
        raise OSError(19, "No such device")


@pytest.mark.unit
class TestComboTracker:
    """Test Ctrl+Alt+F12 recognition."""

    def test_fires_on_press_with_both_modifiers(self):
        tracker = ComboTracker()
        assert not tracker.feed(EV_KEY, KEY_LEFTCTRL, 1)
        assert not tracker.feed(EV_KEY, KEY_LEFTALT, 1)
        assert tracker.feed(EV_KEY, KEY_F12, 1)

    def test_repeat_and_release_ignored(self):
        """Holding F12 produces exactly one trigger."""
        tracker = ComboTracker()
        tracker.feed(EV_KEY, KEY_RIGHTCTRL, 1)
        tracker.feed(EV_KEY, KEY_LEFTALT, 1)
        fired = [tracker.feed(EV_KEY, KEY_F12, value) for value in (1, 2, 2, 2, 0)]
        assert fired == [True, False, False, False, False]

    def test_missing_modifier(self):
        tracker = ComboTracker()
        tracker.feed(EV_KEY, KEY_LEFTCTRL, 1)
        assert not tracker.feed(EV_KEY, KEY_F12, 1)

    def test_released_modifier_clears_flag(self):
        tracker = ComboTracker()
        tracker.feed(EV_KEY, KEY_LEFTCTRL, 1)
        tracker.feed(EV_KEY, KEY_LEFTALT, 1)
        tracker.feed(EV_KEY, KEY_LEFTALT, 0)
        assert not tracker.feed(EV_KEY, KEY_F12, 1)

    def test_other_side_modifier_still_held(self):
        """Releasing left Ctrl while right Ctrl is down keeps Ctrl held."""
        tracker = ComboTracker()
        tracker.feed(EV_KEY, KEY_LEFTCTRL, 1)
        tracker.feed(EV_KEY, KEY_RIGHTCTRL, 1)
        tracker.feed(EV_KEY, KEY_RIGHTALT, 1)
        tracker.feed(EV_KEY, KEY_LEFTCTRL, 0)

        assert tracker.ctrl
        assert tracker.feed(EV_KEY, KEY_F12, 1)

    def test_non_key_events_ignored(self):
        tracker = ComboTracker()
        tracker.feed(EV_KEY, KEY_LEFTCTRL, 1)
        tracker.feed(EV_KEY, KEY_LEFTALT, 1)
        assert not tracker.feed(EV_SYN, KEY_F12, 1)


@pytest.mark.unit
class TestMatchers:
    """Test scan code and escape sequence matchers."""

    def test_scancode_debounced_until_release(self):
        matcher = ScanCodeMatcher()
        assert matcher.feed("0x58 ")
        assert not matcher.feed("0x58 ")
        assert not matcher.feed("0xd8 ")
        assert matcher.feed("0x58 ")

    def test_scancode_other_keys(self):
        matcher = ScanCodeMatcher()
        assert not matcher.feed("keycode  28 press")
        assert not matcher.feed("0x1c 0x9c")

    def test_escape_sequence_found(self):
        matcher = EscapeSequenceMatcher()
        assert matcher.feed(b"ls -l\r\x1b[24~") == 1

    def test_escape_sequence_split_across_reads(self):
        matcher = EscapeSequenceMatcher()
        assert matcher.feed(b"\x1b[2") == 0
        assert matcher.feed(b"4~") == 1

    def test_buffer_reset_when_full(self):
        matcher = EscapeSequenceMatcher(limit=100)
        matcher.feed(b"x" * 99)
        assert len(matcher.buffer) == 99
        matcher.feed(b"x")
        assert len(matcher.buffer) == 0

    def test_other_function_keys_ignored(self):
        matcher = EscapeSequenceMatcher()
        assert matcher.feed(b"\x1b[23~\x1b[21~") == 0


@pytest.mark.unit
class TestEventDeviceDetector:
    """Test evdev decoding on a file of packed input events."""

    def test_watch_fires_once_per_press(self, tmp_path):
        device = tmp_path / "event0"
        device.write_bytes(
            key(KEY_LEFTCTRL, 1)
            + key(KEY_LEFTALT, 1)
            + syn()
            + key(KEY_F12, 1)
            + key(KEY_F12, 2)
            + key(KEY_F12, 2)
            + key(KEY_F12, 0)
            + key(KEY_F12, 1)
            + key(KEY_F12, 0)
        )
        sink = MagicMock()

        EventDeviceDetector(str(device)).watch(sink, threading.Event())

        assert sink.call_count == 2
        sink.assert_called_with(SignalKind.RETURN, "evdev")

    def test_channel_error_contained(self, tmp_path):
        device = tmp_path / "event0"
        device.write_bytes(key(KEY_LEFTCTRL, 1) + key(KEY_LEFTALT, 1) + key(KEY_F12, 1))
        sink = MagicMock(side_effect=ChannelError("No reader"))

        EventDeviceDetector(str(device)).watch(sink, threading.Event())

        sink.assert_called_once()

    def test_is_keyboard_reads_capabilities(self, tmp_path):
        caps = tmp_path / "event3" / "device" / "capabilities"
        caps.mkdir(parents=True)
        low = (1 << KEY_LEFTCTRL) | (1 << KEY_LEFTALT)
        high = 1 << (KEY_F12 - 64)
        (caps / "key").write_text(f"{high:x} {low:x}\n")

        assert EventDeviceDetector.is_keyboard("/dev/input/event3", sysfs=str(tmp_path))

    def test_mouse_is_not_keyboard(self, tmp_path):
        caps = tmp_path / "event4" / "device" / "capabilities"
        caps.mkdir(parents=True)
        (caps / "key").write_text("1f0000 0 0 0 0\n")

        assert not EventDeviceDetector.is_keyboard("/dev/input/event4", sysfs=str(tmp_path))

    def test_missing_capabilities(self, tmp_path):
        assert not EventDeviceDetector.is_keyboard("/dev/input/event9", sysfs=str(tmp_path))


@pytest.fixture
def fake_showkey(tmp_path, monkeypatch):
    """Install a showkey stand-in on PATH; returns (write_script, spawn_count)."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    runs = tmp_path / "showkey-runs"
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def write_script(body: str) -> None:
        script = bin_dir / "showkey"
        script.write_text(f"#!/bin/sh\necho run >> {runs}\n{body}\n")
        script.chmod(0o755)

    def spawn_count() -> int:
        return len(runs.read_text().splitlines()) if runs.exists() else 0

    return write_script, spawn_count


@pytest.mark.unit
class TestLegacyKeycodeDetector:
    """Test the showkey -s detector."""

    def test_failing_showkey_ends_detector(self, fake_showkey, tmp_path):
        """A showkey that cannot run on the tty is not respawned."""
        write_script, spawn_count = fake_showkey
        write_script("exit 1")
        tty = tmp_path / "tty1"
        tty.write_bytes(b"")

        with pytest.raises(OSError, match="exited 1"):
            LegacyKeycodeDetector(str(tty)).watch(MagicMock(), threading.Event())

        assert spawn_count() == 1

    def test_idle_exit_restarts_after_delay(self, fake_showkey, tmp_path, monkeypatch):
        write_script, spawn_count = fake_showkey
        write_script("printf '0x58 \\n0xd8 \\n'\nexit 0")
        monkeypatch.setattr("booter.services.detectors.SHOWKEY_RESTART_DELAY", 0.3)
        tty = tmp_path / "tty1"
        tty.write_bytes(b"")
        sink = MagicMock()
        stop_event = threading.Event()
        thread = threading.Thread(
            target=LegacyKeycodeDetector(str(tty)).watch, args=(sink, stop_event)
        )

        started = time.monotonic()
        thread.start()
        time.sleep(1.0)
        stop_event.set()
        thread.join(5)
        elapsed = time.monotonic() - started

        assert not thread.is_alive()
        assert 2 <= spawn_count() <= elapsed / 0.3 + 1
        sink.assert_called_with(SignalKind.RETURN, "showkey")

    @pytest.mark.asyncio
    async def test_supervised_failure_stops_detector(self, fake_showkey, booter_config, tmp_path):
        write_script, _ = fake_showkey
        write_script("exit 2")
        tty = tmp_path / "tty1"
        tty.write_bytes(b"")
        supervisor = DetectorSupervisor(
            booter_config,
            MagicMock(),
            lambda: PhaseEnum.TARGET,
            factory=lambda: [LegacyKeycodeDetector(str(tty))],
        )
        await supervisor.start_all()
        (handle,) = supervisor.handles

        await asyncio.wait_for(handle.task, 3)

        assert not handle.running
        await supervisor.stop_all()


@pytest.mark.unit
class TestRawConsoleDetector:
    """Test the console escape sequence detector."""

    def test_swallowed_in_bootstrap(self, tmp_path):
        console = tmp_path / "console"
        console.write_bytes(b"\x1b[24~")
        sink = MagicMock()

        RawConsoleDetector(str(console), lambda: PhaseEnum.BOOTSTRAP).watch(sink, threading.Event())

        sink.assert_not_called()

    def test_fires_in_target(self, tmp_path):
        console = tmp_path / "console"
        console.write_bytes(b"abc\x1b[24~def")
        sink = MagicMock()

        RawConsoleDetector(str(console), lambda: PhaseEnum.TARGET).watch(sink, threading.Event())

        sink.assert_called_once_with(SignalKind.RETURN, "console")


@pytest.mark.unit
class TestSerialDetector:
    """Test the serial magic token detector."""

    def _port(self, chunks, stop_event):
        queue = list(chunks)

        def read(size):
            if queue:
                return queue.pop(0)
            stop_event.set()
            return b""

        port = MagicMock()
        port.in_waiting = 0
        port.read.side_effect = read
        port.__enter__.return_value = port
        return port

    def test_token_across_reads(self):
        stop_event = threading.Event()
        port = self._port([b"hello RETURN_TO", b"_BOOTSTRAP\r", b"noise\n"], stop_event)
        sink = MagicMock()

        with patch("booter.services.detectors.serial.Serial", return_value=port) as serial_cls:
            SerialDetector("/dev/ttyS0", "RETURN_TO_BOOTSTRAP").watch(sink, stop_event)

        serial_cls.assert_called_once_with("/dev/ttyS0", 115200, timeout=0.5)
        sink.assert_called_once_with(SignalKind.RETURN, "serial")

    def test_partial_token_does_not_fire(self):
        stop_event = threading.Event()
        port = self._port([b"RETURN_TO\n", b"BOOTSTRAP\n"], stop_event)
        sink = MagicMock()

        with patch("booter.services.detectors.serial.Serial", return_value=port):
            SerialDetector("/dev/ttyS0", "RETURN_TO_BOOTSTRAP").watch(sink, stop_event)

        sink.assert_not_called()

    def test_first_available_skips_missing(self, tmp_path):
        present = tmp_path / "ttyUSB0"
        present.write_bytes(b"")
        detector = SerialDetector.first_available(
            [str(tmp_path / "ttyS0"), str(present)], "TOKEN"
        )
        assert detector is not None
        assert detector.device == str(present)

    def test_none_available(self, tmp_path):
        assert SerialDetector.first_available([str(tmp_path / "ttyS0")], "TOKEN") is None


@pytest.mark.unit
class TestDetectorSupervisor:
    """Test start/stop/restart of the detector set."""

    @pytest.mark.asyncio
    async def test_start_stop_restart(self, booter_config):
        supervisor = DetectorSupervisor(
            booter_config,
            MagicMock(),
            lambda: PhaseEnum.TARGET,
            factory=lambda: [IdleDetector("a"), IdleDetector("b")],
        )

        assert await supervisor.start_all() == 2
        assert supervisor.running_count() == 2
        first_handles = supervisor.handles

        assert await supervisor.restart_all() == 2
        assert all(not handle.running for handle in first_handles)
        assert supervisor.running_count() == 2

        await supervisor.stop_all()
        assert supervisor.handles == []

    @pytest.mark.asyncio
    async def test_detector_error_is_contained(self, booter_config):
        """A failing detector ends itself; the others keep running."""
        supervisor = DetectorSupervisor(
            booter_config,
            MagicMock(),
            lambda: PhaseEnum.TARGET,
            factory=lambda: [BrokenDetector("x"), IdleDetector("y")],
        )
        await supervisor.start_all()
        broken, idle = supervisor.handles

        await asyncio.wait_for(broken.task, 2)

        assert not broken.running
        assert idle.running
        await supervisor.stop_all()

    @pytest.mark.asyncio
    async def test_handle_restart(self):
        handle = IdleDetector("z").start(MagicMock())
        new_handle = await handle.restart(MagicMock())

        assert not handle.running
        assert new_handle.running
        await new_handle.stop()

    def test_discover_console_only(self, booter_config, tmp_path):
        """With no keyboards or serial ports only the console detector remains."""
        console = tmp_path / "console"
        console.write_bytes(b"")
        config = booter_config.model_copy(
            update={
                "console_device": str(console),
                "input_device_glob": str(tmp_path / "event*"),
                "tty_glob": str(tmp_path / "tty[0-9]*"),
                "serial_devices": [str(tmp_path / "ttyS0")],
            }
        )
        supervisor = DetectorSupervisor(config, MagicMock(), lambda: PhaseEnum.TARGET)

        detectors = supervisor.discover()

        assert [type(d) for d in detectors] == [RawConsoleDetector]
