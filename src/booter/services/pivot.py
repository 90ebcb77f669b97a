"""Pivot/return state machine.

PivotController is the only writer of BootstrapState and of the MountSet.
Every step that changes the mount topology has a compensating step, so a
failure before the root swap leaves Bootstrap exactly as it was.
"""

import asyncio
import os
import signal
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
import logging

import uvicorn

from booter.config import BooterConfig
from booter.errors import (
    BooterError,
    CommandError,
    MountError,
    NotInTargetError,
    PivotBusyError,
    PivotError,
    ReversePivotError,
)
from booter.models.artifact import ImageArtifact, InstalledRoot
from booter.models.signal import ControlSignal, SignalKind
from booter.models.state import BootstrapState
from booter.models.status import PhaseEnum, PivotOutcome, ReturnOutcome
from booter.services.acquirer import ImageAcquirer
from booter.services.detectors import DetectorSupervisor
from booter.services.installer import VIRTUAL_DIRS, ImageInstaller
from booter.services.mounts import MountKind, MountRecord, MountSet
from booter.services.signal_bus import SignalBus
from booter.services.state_store import StateStore
from booter.services.system import SystemOps
from booter.services.target_hooks import write_target_hooks
from booter.utils.logging import rebind_log_file

# Filesystem type used when a Bootstrap virtual fs cannot be moved
VIRTUAL_FSTYPES = {"proc": "proc", "sys": "sysfs", "dev": "devtmpfs"}

SYSTEMD_SOCKET = "/run/systemd/private"
EXIT_POLL_INTERVAL = 0.2

RETURN_BANNER = (
    "========================================",
    "   Welcome back to Bootstrap",
    "   Load another image with: booter load <url>",
    "========================================",
)


class PivotController:
    """Forward pivot into a target root and reverse return to Bootstrap."""

    def __init__(
        self,
        config: BooterConfig,
        system: Optional[SystemOps] = None,
        store: Optional[StateStore] = None,
        bus: Optional[SignalBus] = None,
        acquirer: Optional[ImageAcquirer] = None,
        installer: Optional[ImageInstaller] = None,
        detectors: Optional[DetectorSupervisor] = None,
        app_factory: Optional[Callable[["PivotController"], object]] = None,
    ):
        """Initialize pivot controller.

        Args:
            config: Paths and constants
            system: OS primitives (tests pass a fake)
            store: State store; the controller is its only writer
            bus: Control channel
            acquirer: Image downloader
            installer: Image installer; must share this controller's MountSet
            detectors: Detector supervisor
            app_factory: Builds the HTTP API app served next to the channel
        """
        self.logger = logging.getLogger("booter.pivot")
        self.config = config
        self.system = system or SystemOps()
        self.store = store or StateStore(config.state_file)
        self.bus = bus or SignalBus(config.fifo_path, config.heal_delay)
        self.mounts = installer.mounts if installer else MountSet(self.system)
        self.acquirer = acquirer or ImageAcquirer(timeout=config.http_timeout)
        self.installer = installer or ImageInstaller(
            self.mounts, config.image_dir, config.init_candidates
        )
        self.detectors = detectors or DetectorSupervisor(
            config, self.bus.send, self.store.reader().phase
        )
        self.app_factory = app_factory

        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None
        self._artifact: Optional[ImageArtifact] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self) -> str:
        """Status text: phase, boot_time, last_image_url and target_pid when set."""
        return self.store.get().to_status_text()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def _exclusive(self, operation: str):
        # Checked without waiting: a second pivot is rejected, never queued
        if self._lock.locked():
            raise PivotBusyError(f"Cannot start {operation}: another pivot is in progress")
        async with self._lock:
            yield

    # ------------------------------------------------------------------
    # Load + forward pivot
    # ------------------------------------------------------------------

    async def load(self, url: str) -> PivotOutcome:
        """Download url, install it and pivot into it.

        Any failure before the root swap unwinds the mounts, deletes the
        artifact and the newroot contents, and leaves phase=bootstrap.

        Args:
            url: HTTP/HTTPS image URL

        Returns:
            PivotOutcome.RECOVERED if the target init could not be executed
            (only returns at all in that case)

        Raises:
            NetworkError, DownloadError, FormatError, MountError,
            ExtractionError, PivotError, PivotBusyError
        """
        state = self.store.initialize()
        if state.in_target():
            raise PivotBusyError("A target is already running; return to bootstrap first")

        self.logger.info(f"=== Loading image {url} ===")
        try:
            await self.acquirer.check_reachable(url)
            await self.prepare_newroot()
            self._artifact = await self.acquirer.fetch(url, self.config.artifact_path)
            installed = await self.installer.install(self._artifact, self.config.newroot)
            await self.installer.mount_essentials(installed.path)
            write_target_hooks(
                installed.path,
                self.config.bootstrap_root,
                self.config.via_backref(self.config.fifo_path),
            )
        except BooterError as e:
            self.logger.error(f"Load failed: {e}")
            await self._abort_load()
            raise
        except OSError as e:
            self.logger.error(f"Load failed: {e}")
            await self._abort_load()
            raise MountError(f"Cannot prepare {self.config.newroot}: {e}") from e

        await self._stop_serve_daemon()

        try:
            return await self.forward_pivot(installed)
        except PivotError:
            if self.store.get().phase == PhaseEnum.BOOTSTRAP:
                self._discard_artifact()
                self.system.remove_tree(self.config.newroot)
            raise

    async def prepare_newroot(self) -> None:
        """Unmount and delete leftovers of a previous attempt, then recreate newroot.

        Raises:
            MountError: If a stale mount cannot be removed
        """
        newroot = self.config.newroot
        stale = [newroot, self.config.image_dir / "overlay", self.config.image_dir / "squashfs"]
        for path in stale:
            if await self.system.is_mountpoint(path):
                self.logger.warning(f"Unmounting stale {path}")
                try:
                    await self.system.umount(path, recursive=True)
                except CommandError as e:
                    raise MountError(f"Cannot clear stale mount {path}: {e.message}") from e

        self.system.remove_tree(newroot)
        self.system.makedirs(newroot)
        self.system.makedirs(self.config.image_dir)

    async def _abort_load(self) -> None:
        failed = await self.mounts.unwind()
        self._discard_artifact()
        if failed:
            self.logger.warning(f"{len(failed)} mounts left behind, keeping {self.config.newroot}")
        else:
            self.system.remove_tree(self.config.newroot)
        self.logger.info("Rolled back, still in bootstrap")

    def _discard_artifact(self) -> None:
        if self._artifact is not None:
            self.acquirer.cleanup(self._artifact)
            self._artifact = None
            return
        path = self.config.artifact_path
        path.unlink(missing_ok=True)
        path.with_name(path.name + ".part").unlink(missing_ok=True)

    async def _stop_serve_daemon(self) -> None:
        """Stop a running `booter serve` so the handler becomes the only consumer."""
        pid_file = self.config.pid_file
        try:
            pid = int(pid_file.read_text().strip())
        except FileNotFoundError:
            return
        except (OSError, ValueError):
            pid_file.unlink(missing_ok=True)
            return

        if pid != os.getpid() and self.system.pid_alive(pid):
            self.logger.info(f"Stopping bootstrap daemon (PID: {pid})")
            self.system.kill(pid)
            if not await self._wait_exit(pid, self.config.grace_period):
                self.logger.warning(f"Bootstrap daemon {pid} still running")
        pid_file.unlink(missing_ok=True)

    async def forward_pivot(self, installed: InstalledRoot) -> PivotOutcome:
        """Swap into installed root and hand over to its init.

        Phase is persisted as target before the swap. A failed swap restores
        phase=bootstrap and unwinds every mount. If the exec of init fails,
        the controller returns to Bootstrap on its own.

        Returns:
            PivotOutcome.RECOVERED after a failed exec and successful return

        Raises:
            PivotBusyError: If another pivot is in flight
            PivotError: If the swap fails, or the exec and the recovery both fail
        """
        async with self._exclusive("forward pivot"):
            handler_pid = await self._swap_into(installed)

        try:
            self.system.exec_init(installed.init)
        except OSError as e:
            self.logger.error(f"Failed to execute {installed.init}: {e}, returning to bootstrap")

        # Only reached when exec failed; this process handles the return itself
        self.system.kill(handler_pid)
        await self._wait_exit(handler_pid, self.config.grace_period)
        try:
            await self.reverse_return()
        except BooterError as e:
            raise PivotError(
                f"Target init {installed.init} did not start and recovery failed: {e}",
                state=self.store.get().model_dump(mode="json"),
            ) from e
        return PivotOutcome.RECOVERED

    async def _swap_into(self, installed: InstalledRoot) -> int:
        """Steps 1-5 of the forward pivot.

        Returns:
            PID of the return handler
        """
        newroot = Path(installed.path)
        put_old = newroot / self.config.oldroot_name
        try:
            self.system.makedirs(put_old)
            self.store.update(
                phase=PhaseEnum.TARGET,
                target_pid=os.getpid(),
                oldroot=str(self.config.backref),
                last_image_url=installed.url,
            )
        except OSError as e:
            self.logger.error(f"Cannot prepare pivot into {newroot}: {e}")
            await self._undo_forward()
            raise PivotError(
                f"Cannot prepare pivot into {newroot}: {e}",
                state=self.store.get().model_dump(mode="json"),
            ) from e

        self.logger.info("Performing pivot_root...")
        try:
            await self.system.pivot_root(newroot, put_old)
        except CommandError as e:
            self.logger.error(f"pivot_root failed: {e}")
            await self._undo_forward()
            raise PivotError(
                f"pivot_root {newroot} failed: {e.message}",
                state=self.store.get().model_dump(mode="json"),
            ) from e

        self.mounts.rebase(newroot, put_old)
        await self._rehome_virtual_fs(self.config.backref)

        self.store.rebind(self.config.via_backref(self.config.state_file))
        self.bus.rebind(self.config.via_backref(self.config.fifo_path))
        rebind_log_file(str(self.config.via_backref(Path(self.config.log_file))))
        self.logger.info(f"Pivot complete, old root at {self.config.backref}")

        return self.system.spawn_handler(self._handler_main)

    async def _undo_forward(self) -> None:
        """Compensate steps 1-2: phase back to bootstrap, every mount released."""
        try:
            self.store.update(phase=PhaseEnum.BOOTSTRAP, target_pid=None, oldroot=None)
        except OSError as e:
            self.logger.error(f"Cannot reset state to bootstrap: {e}")
        await self.mounts.unwind()

    async def _rehome_virtual_fs(self, origin_root: Path) -> None:
        """Move origin_root/{proc,sys,dev} to /{proc,sys,dev}, fresh mount as fallback."""
        for name in VIRTUAL_DIRS:
            source = Path(origin_root) / name
            dest = Path("/") / name
            try:
                await self.mounts.move(source, dest)
                continue
            except CommandError as e:
                self.logger.warning(f"Cannot move {source}: {e.message}")

            fstype = VIRTUAL_FSTYPES[name]
            try:
                await self.mounts.mount(fstype, dest, fstype=fstype, kind=MountKind.FRESH)
            except CommandError as e:
                self.logger.error(f"Cannot mount {fstype} on {dest}: {e.message}")

    def _handler_main(self) -> int:
        """Entry point of the forked return handler."""
        # The fork happened under the forward lock; this process starts unlocked
        self._lock = asyncio.Lock()
        self._tasks = set()
        try:
            asyncio.run(self.serve())
        except BooterError as e:
            self.logger.error(f"Return handler failed: {e}")
            return 1
        return 0

    # ------------------------------------------------------------------
    # Reverse return
    # ------------------------------------------------------------------

    async def reverse_return(self) -> ReturnOutcome:
        """Tear the target down and swap back to Bootstrap.

        Returns:
            ReturnOutcome.RETURNED, or IN_PROGRESS if a pivot is already running

        Raises:
            NotInTargetError: Not in target or back-reference missing (state untouched)
            ReversePivotError: The swap back failed (phase stays target)
        """
        if self._lock.locked():
            self.logger.warning("Return already in progress, ignoring request")
            return ReturnOutcome.IN_PROGRESS

        async with self._lock:
            state = self.store.get()
            backref = self.config.backref
            if (
                state.phase != PhaseEnum.TARGET
                or state.target_pid is None
                or not self.system.is_dir(backref)
            ):
                raise NotInTargetError(
                    f"Not in target system (phase={state.phase.value}, backref={backref})"
                )

            self.logger.info("=== Returning to bootstrap ===")
            await self._request_target_shutdown(state.target_pid)

            self.logger.info("Unmounting target filesystems...")
            await self.mounts.unwind_top([MountKind.MOVE, MountKind.FRESH, MountKind.BIND])

            await self._swap_back(backref)
            await self._finish_return()
            return ReturnOutcome.RETURNED

    async def _request_target_shutdown(self, target_pid: int) -> None:
        if target_pid == os.getpid():
            self.logger.debug("Target init never started in this process, nothing to stop")
            return

        self.logger.warning("Attempting to notify target of shutdown...")
        if self.system.exists(SYSTEMD_SOCKET):
            await self.system.run(
                "systemctl", "--no-block", "isolate", "emergency.target", check=False
            )
        self.system.kill(target_pid, signal.SIGTERM)

        if not await self._wait_exit(target_pid, self.config.grace_period):
            self.logger.warning(
                f"Target init {target_pid} still running after {self.config.grace_period}s, "
                f"continuing"
            )

    async def _wait_exit(self, pid: int, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.system.pid_alive(pid):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(EXIT_POLL_INTERVAL)
        return True

    async def _swap_back(self, backref: Path) -> None:
        """pivot_root through the back-reference, compensating on failure."""
        temp_node = backref / self.config.reverse_oldroot_name
        intermediate: Optional[MountRecord] = None

        self.logger.info("Performing reverse pivot...")
        try:
            if not await self.system.is_mountpoint(backref):
                # pivot_root needs the new root to be a mount point
                intermediate = await self.mounts.bind(backref, backref)
            self.system.makedirs(temp_node)
            await self.system.pivot_root(backref, temp_node)
        except CommandError as e:
            self.logger.error(f"Reverse pivot failed: {e}")
            if intermediate is not None:
                try:
                    await self.mounts.release(intermediate)
                except CommandError as undo_error:
                    self.logger.warning(f"Could not release {backref}: {undo_error.message}")
            try:
                self.system.remove_dir(temp_node)
            except OSError as undo_error:
                self.logger.warning(f"Could not remove {temp_node}: {undo_error}")
            await self._rehome_virtual_fs(backref)
            raise ReversePivotError(
                f"pivot_root {backref} failed: {e.message}",
                state=self.store.get().model_dump(mode="json"),
            ) from e

        self.mounts.rebase(backref, temp_node)
        if intermediate is not None:
            # Now the Bootstrap root itself
            self.mounts.forget(intermediate)

    async def _finish_return(self) -> None:
        temp_node = Path("/") / self.config.reverse_oldroot_name
        await self._ensure_virtual_fs()

        root_failed = await self.mounts.unwind_top([MountKind.ROOT])
        if root_failed:
            self.logger.warning("Could not unmount target root cleanly")
        image_failed = await self.mounts.unwind_top([MountKind.IMAGE])

        try:
            self.system.remove_dir(temp_node)
        except OSError as e:
            self.logger.warning(f"Could not remove {temp_node}: {e}")

        self.store.rebind(self.config.state_file)
        self.bus.rebind(self.config.fifo_path)
        rebind_log_file(self.config.log_file)
        self.store.update(
            phase=PhaseEnum.BOOTSTRAP,
            target_pid=None,
            oldroot=None,
            last_return_at=datetime.now(),
        )

        self._discard_artifact()
        if not root_failed and not image_failed:
            self.system.remove_tree(self.config.newroot)

        await self.detectors.restart_all()
        for line in RETURN_BANNER:
            self.logger.info(line)

    async def _ensure_virtual_fs(self) -> None:
        """Bootstrap gets its own /proc, /sys, /dev back; fresh ones if they were lost."""
        for name in VIRTUAL_DIRS:
            path = Path("/") / name
            if await self.system.is_mountpoint(path):
                continue
            fstype = VIRTUAL_FSTYPES[name]
            self.logger.warning(f"{path} missing after return, mounting fresh {fstype}")
            try:
                await self.system.mount(fstype, path, fstype=fstype)
            except CommandError as e:
                self.logger.error(f"Cannot mount {fstype} on {path}: {e.message}")

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    async def handle_signal(self, control: ControlSignal) -> Optional[str]:
        """Dispatch one control signal.

        Returns run as their own task so the channel keeps being read and a
        second request gets IN_PROGRESS instead of queueing.

        Returns:
            Status text for STATUS, None otherwise
        """
        self.logger.info(f"Received signal: {control.kind.value} (from {control.source})")
        if control.kind == SignalKind.RETURN:
            task = asyncio.create_task(self._run_return(control.source), name="reverse-return")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return None

        if control.kind == SignalKind.STATUS:
            text = self.status()
            for line in text.splitlines():
                self.logger.info(line)
            return text

        self.logger.warning(f"Unknown signal discarded: {control.raw!r}")
        return None

    async def _run_return(self, source: str) -> Optional[ReturnOutcome]:
        try:
            outcome = await self.reverse_return()
        except NotInTargetError as e:
            self.logger.warning(f"Return requested by {source} ignored: {e}")
            return None
        except BooterError as e:
            self.logger.error(f"Return requested by {source} failed: {e}")
            return None
        self.logger.info(f"Return requested by {source}: {outcome.value}")
        return outcome

    def recover(self) -> BootstrapState:
        """Load state and repair a target phase whose back-reference is gone."""
        state = self.store.initialize()
        if state.phase == PhaseEnum.TARGET and not self.system.is_dir(self.config.backref):
            self.logger.warning(
                f"Found interrupted pivot (phase=target, no {self.config.backref}), "
                f"resetting to bootstrap"
            )
            state = self.store.update(phase=PhaseEnum.BOOTSTRAP, target_pid=None, oldroot=None)
        else:
            self.logger.info(f"Resuming in phase {state.phase.value}")
        return state

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def _pid_file(self) -> Path:
        # Follows the store, so the handler's pid file ends up in Bootstrap after a return
        return self.store.state_file_path.with_name(self.config.pid_file.name)

    async def serve(self) -> None:
        """Run the control channel consumer, detectors and API until stopped."""
        self.recover()
        self.bus.ensure()

        pid_file = self._pid_file()
        pid_file.write_text(f"{os.getpid()}\n", encoding="utf-8")

        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self.stop)

        workers = [asyncio.create_task(self.bus.run(self.handle_signal), name="signal-bus")]
        server = None
        if self.config.api_enabled and self.app_factory is not None:
            server = uvicorn.Server(
                uvicorn.Config(
                    self.app_factory(self),
                    host=self.config.api_host,
                    port=self.config.api_port,
                    log_level="info",
                    access_log=True,
                )
            )
            workers.append(asyncio.create_task(server.serve(), name="api"))

        try:
            await self.detectors.start_all()
            waiter = asyncio.create_task(self._stop_event.wait(), name="stop")
            await asyncio.wait([waiter, *workers], return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
        finally:
            self.logger.info("Shutting down...")
            self.bus.stop()
            if server is not None:
                server.should_exit = True
            for worker in workers:
                try:
                    await worker
                except Exception:
                    self.logger.exception(f"{worker.get_name()} task failed")
            if self._tasks:
                await asyncio.wait(self._tasks)
            await self.detectors.stop_all()
            for signum in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(signum)
            # The store may have been rebound by a return since the write
            self._pid_file().unlink(missing_ok=True)
