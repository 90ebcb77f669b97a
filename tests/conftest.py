"""Global pytest fixtures and configuration."""

import asyncio
import io
import os
import sys
import tarfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from booter.config import BooterConfig  # noqa: E402
from booter.errors import CommandError  # noqa: E402
from booter.services.mounts import pivot_path  # noqa: E402


class ExecCalled(BaseException):
    """Raised by the fake exec_init: a real exec never returns."""

    def __init__(self, init: str):
        super().__init__(init)
        self.init = init


class FakeSystemOps:
    """In-memory stand-in for SystemOps.

    Keeps a list of mount points and known directories and rewrites both on
    pivot_root exactly like the kernel would, so tests can compare the
    topology before and after a pivot/return round trip.
    """

    INITIAL_MOUNTS = ["/", "/proc", "/sys", "/dev"]
    ExecCalled = ExecCalled

    def __init__(self):
        self.mounted: list[str] = list(self.INITIAL_MOUNTS)
        self.dirs: set[str] = {"/", "/proc", "/sys", "/dev", "/run"}
        self.calls: list[tuple] = []
        self.failures: dict[str, int] = {}
        self.exec_error: OSError | None = None
        self.spawned: list = []
        self.killed: list[tuple[int, int]] = []
        self.alive: set[int] = set()
        self.stubborn: set[int] = set()
        self.systemd = False
        self.pivot_gate: asyncio.Event | None = None
        self.pivot_entered = asyncio.Event()

    # -- helpers ---------------------------------------------------------

    def fail_next(self, op: str, times: int = 1) -> None:
        self.failures[op] = self.failures.get(op, 0) + times

    def _maybe_fail(self, op: str, *argv) -> None:
        if self.failures.get(op, 0) > 0:
            self.failures[op] -= 1
            raise CommandError([op, *map(str, argv)], 32, f"{op}: simulated failure")

    @staticmethod
    def _norm(path) -> str:
        return os.path.normpath(str(path))

    def ops(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    # -- SystemOps surface -----------------------------------------------

    async def run(self, *argv, check=True):
        self.calls.append(("run", *argv))
        return 0, "", ""

    async def mount(self, source, target, fstype=None, options=None):
        self.calls.append(("mount", str(source), self._norm(target), fstype, options))
        self._maybe_fail("mount", source, target)
        self.mounted.append(self._norm(target))

    async def bind(self, source, target, recursive=False):
        self.calls.append(("bind", self._norm(source), self._norm(target), recursive))
        self._maybe_fail("bind", source, target)
        self.mounted.append(self._norm(target))

    async def move(self, source, target):
        source, target = self._norm(source), self._norm(target)
        self.calls.append(("move", source, target))
        self._maybe_fail("move", source, target)
        if source not in self.mounted:
            raise CommandError(["mount", "--move", source, target], 32, "not mounted")
        self.mounted.remove(source)
        self.mounted.append(target)

    async def umount(self, target, recursive=False):
        target = self._norm(target)
        self.calls.append(("umount", target, recursive))
        self._maybe_fail("umount", target)
        if target not in self.mounted:
            raise CommandError(["umount", target], 32, "not mounted")
        if recursive:
            prefix = target.rstrip("/") + "/"
            self.mounted = [
                m for m in self.mounted if m != target and not m.startswith(prefix)
            ]
        else:
            self.mounted.remove(target)

    async def pivot_root(self, new_root, put_old):
        new_root, put_old = self._norm(new_root), self._norm(put_old)
        self.calls.append(("pivot_root", new_root, put_old))
        if self.pivot_gate is not None:
            self.pivot_entered.set()
            await self.pivot_gate.wait()
        self._maybe_fail("pivot_root", new_root, put_old)
        self.mounted = [pivot_path(m, new_root, put_old) for m in self.mounted]
        self.dirs = {pivot_path(d, new_root, put_old) for d in self.dirs}

    async def is_mountpoint(self, path):
        return self._norm(path) in self.mounted

    def is_dir(self, path):
        path = self._norm(path)
        return path in self.dirs or path in self.mounted

    def makedirs(self, path):
        self.dirs.add(self._norm(path))

    def remove_dir(self, path):
        self.calls.append(("remove_dir", self._norm(path)))
        self.dirs.discard(self._norm(path))

    def remove_tree(self, path):
        path = self._norm(path)
        self.calls.append(("remove_tree", path))
        prefix = path.rstrip("/") + "/"
        self.dirs = {d for d in self.dirs if d != path and not d.startswith(prefix)}

    def exists(self, path):
        if str(path) == "/run/systemd/private":
            return self.systemd
        return self._norm(path) in self.dirs

    def pid_alive(self, pid):
        return pid in self.alive or pid in self.stubborn

    def kill(self, pid, sig=15):
        self.killed.append((pid, sig))
        self.alive.discard(pid)

    def spawn_handler(self, entry):
        self.spawned.append(entry)
        return 4242

    def exec_init(self, init):
        self.calls.append(("exec", init))
        if self.exec_error is not None:
            raise self.exec_error
        raise ExecCalled(init)


@pytest.fixture
def fake_system():
    """FakeSystemOps with a plain Bootstrap topology."""
    return FakeSystemOps()


@pytest.fixture
def booter_config(tmp_path):
    """BooterConfig with every writable path under tmp_path."""
    bootstrap_root = tmp_path / "bootstrap"
    bootstrap_root.mkdir()
    return BooterConfig(
        state_dir=tmp_path / "state",
        fifo_path=tmp_path / "return-signal",
        newroot=Path("/newroot"),
        image_dir=tmp_path / "images",
        bootstrap_root=bootstrap_root,
        grace_period=0.3,
        heal_delay=0.1,
        api_enabled=False,
        log_file=str(tmp_path / "logs" / "booter.log"),
    )


@pytest.fixture
def mock_detectors():
    """DetectorSupervisor stand-in."""
    detectors = MagicMock()
    detectors.start_all = AsyncMock(return_value=0)
    detectors.stop_all = AsyncMock()
    detectors.restart_all = AsyncMock(return_value=0)
    return detectors


def _add_file(tar: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tar.addfile(info, io.BytesIO(data))


def _add_dir(tar: tarfile.TarFile, name: str) -> None:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    tar.addfile(info)


@pytest.fixture
def rootfs_tarball(tmp_path):
    """Minimal root filesystem tarball with an executable /sbin/init."""
    path = tmp_path / "rootfs.tar.gz"
    with tarfile.open(path, "w:gz") as tar:
        for directory in ("sbin", "etc", "etc/systemd", "etc/systemd/system", "usr", "usr/bin"):
            _add_dir(tar, directory)
        _add_file(tar, "sbin/init", b"#!/bin/sh\nexec /bin/sh\n", mode=0o755)
        _add_file(tar, "etc/hostname", b"target\n")
        _add_file(tar, "usr/bin/hello", b"#!/bin/sh\necho hello\n", mode=0o755)
    return path


@pytest.fixture
def corrupt_tarball(tmp_path):
    """Gzip tarball truncated in the middle of a member."""
    good = tmp_path / "good.tar.gz"
    with tarfile.open(good, "w:gz") as tar:
        _add_file(tar, "sbin/init", os.urandom(256 * 1024), mode=0o755)
    data = good.read_bytes()
    path = tmp_path / "corrupt.tar.gz"
    path.write_bytes(data[: len(data) // 2])
    return path
