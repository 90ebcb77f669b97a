"""Named-pipe control channel: many producers, one consumer."""

import asyncio
import errno
import os
import select
import stat
import threading
from pathlib import Path
from typing import Awaitable, Callable, Optional
import logging

from booter.errors import BooterError, ChannelError
from booter.models.signal import ControlSignal, SignalKind

Dispatch = Callable[[ControlSignal], Awaitable[object]]


class SignalBus:
    """Control channel backed by a FIFO.

    Producers (detectors, the in-target helper, the API, the CLI) write one
    line per signal. The single consumer reads, parses and dispatches in
    order. If the FIFO disappears or is replaced, the consumer recreates it
    within a bounded delay instead of exiting.
    """

    def __init__(self, fifo_path: Path, heal_delay: float = 1.0):
        """Initialize signal bus.

        Args:
            fifo_path: Named pipe path
            heal_delay: Poll interval and recreate delay in seconds
        """
        self.logger = logging.getLogger("booter.signal_bus")
        self.fifo_path = Path(fifo_path)
        self.heal_delay = heal_delay
        self._stopping = threading.Event()
        self._fds: Optional[tuple[int, int]] = None
        self._reader_path: Optional[Path] = None
        self._inode: Optional[int] = None
        self._buffer = b""

    def ensure(self) -> None:
        """Create the FIFO, replacing anything else found at its path."""
        path = self.fifo_path
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            st = None

        if st is not None and not stat.S_ISFIFO(st.st_mode):
            self.logger.warning(f"{path} is not a FIFO, replacing it")
            path.unlink()
            st = None

        if st is None:
            path.parent.mkdir(parents=True, exist_ok=True)
            os.mkfifo(path, 0o622)
            self.logger.info(f"Created control channel {path}")

    def rebind(self, fifo_path: Path) -> None:
        """Switch to another path; the consumer reopens on its next poll."""
        self.logger.info(f"Control channel rebound: {self.fifo_path} -> {fifo_path}")
        self.fifo_path = Path(fifo_path)

    def send(self, kind: SignalKind, source: str = "cli") -> None:
        """Write one signal without blocking.

        Raises:
            ChannelError: If the FIFO is missing, not a FIFO, full or unread
        """
        payload = ControlSignal(kind=kind, source=source).to_payload().encode()
        try:
            st = os.stat(self.fifo_path)
        except FileNotFoundError as e:
            raise ChannelError(f"Control channel {self.fifo_path} does not exist") from e
        if not stat.S_ISFIFO(st.st_mode):
            raise ChannelError(f"{self.fifo_path} is not a FIFO")

        try:
            fd = os.open(self.fifo_path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError as e:
            if e.errno == errno.ENXIO:
                raise ChannelError(f"No reader on control channel {self.fifo_path}") from e
            raise ChannelError(f"Cannot open {self.fifo_path}: {e}") from e

        try:
            os.write(fd, payload)
        except OSError as e:
            raise ChannelError(f"Cannot write to {self.fifo_path}: {e}") from e
        finally:
            os.close(fd)
        self.logger.debug(f"Sent {kind.value} from {source}")

    def stop(self) -> None:
        """Ask run() to return; takes effect within heal_delay."""
        self._stopping.set()

    async def run(self, dispatch: Dispatch) -> None:
        """Consume signals until stop() is called.

        Args:
            dispatch: Coroutine called with each recognized ControlSignal
        """
        self._stopping.clear()
        self.logger.info(f"Monitoring for signals on {self.fifo_path}")
        try:
            while not self._stopping.is_set():
                if self._reader_path != self.fifo_path:
                    self._close()
                try:
                    if self._fds is None:
                        self._open()
                    lines = await asyncio.to_thread(self._poll)
                except OSError as e:
                    self.logger.warning(
                        f"Control channel unavailable ({e}), recreating in {self.heal_delay}s"
                    )
                    self._close()
                    await asyncio.sleep(self.heal_delay)
                    continue

                for line in lines:
                    await self._dispatch_line(line, dispatch)
        finally:
            self._close()
            self.logger.info("Control channel consumer stopped")

    async def _dispatch_line(self, line: str, dispatch: Dispatch) -> None:
        signal = ControlSignal.parse(line)
        if signal.kind == SignalKind.UNKNOWN:
            self.logger.warning(f"Unknown signal: {signal.raw!r}")
            return
        try:
            await dispatch(signal)
        except BooterError as e:
            self.logger.error(f"Handling {signal.kind.value} failed: {e}")

    def _open(self) -> None:
        self.ensure()
        rfd = os.open(self.fifo_path, os.O_RDONLY | os.O_NONBLOCK)
        try:
            # Our own writer end keeps the pipe from reporting EOF between producers
            wfd = os.open(self.fifo_path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError:
            os.close(rfd)
            raise
        self._fds = (rfd, wfd)
        self._reader_path = self.fifo_path
        self._inode = os.fstat(rfd).st_ino
        self._buffer = b""

    def _close(self) -> None:
        if self._fds is not None:
            for fd in self._fds:
                os.close(fd)
        self._fds = None
        self._reader_path = None
        self._inode = None

    def _poll(self) -> list[str]:
        """Wait up to heal_delay for data.

        Returns:
            Complete lines received (possibly none)

        Raises:
            FileNotFoundError: If the FIFO was removed or replaced
        """
        rfd = self._fds[0]
        ready, _, _ = select.select([rfd], [], [], self.heal_delay)
        if ready:
            try:
                data = os.read(rfd, 4096)
            except BlockingIOError:
                return []
            self._buffer += data
            *complete, self._buffer = self._buffer.split(b"\n")
            return [
                line.decode("utf-8", errors="replace").strip()
                for line in complete
                if line.strip()
            ]

        st = os.stat(self._reader_path)
        if st.st_ino != self._inode or not stat.S_ISFIFO(st.st_mode):
            raise FileNotFoundError(errno.ENOENT, "control channel replaced", str(self._reader_path))
        return []
