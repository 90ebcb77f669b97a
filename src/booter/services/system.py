"""OS primitives used by the pivot/return sequences.

Everything that changes mounts, roots or processes goes through SystemOps so
that the controller logic can be exercised against a fake.
"""

import asyncio
import os
import shutil
import signal
from pathlib import Path
from typing import Callable, NoReturn, Optional
import logging

from booter.errors import CommandError


class SystemOps:
    """Thin async wrapper over mount(8), umount(8), pivot_root(8) and friends."""

    def __init__(self):
        """Initialize system operations."""
        self.logger = logging.getLogger("booter.system")

    async def run(self, *argv: str, check: bool = True) -> tuple[int, str, str]:
        """Run a command without a shell.

        Args:
            argv: Program and arguments
            check: Raise CommandError on non-zero exit

        Returns:
            (returncode, stdout, stderr)

        Raises:
            CommandError: If check is set and the command fails or is missing
        """
        argv = [str(a) for a in argv]
        self.logger.debug(f"exec: {' '.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CommandError(argv, 127, str(e)) from e

        stdout, stderr = await process.communicate()
        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace")

        if check and process.returncode != 0:
            raise CommandError(argv, process.returncode, err)
        return process.returncode, out, err

    async def mount(
        self,
        source: str,
        target: Path,
        fstype: Optional[str] = None,
        options: Optional[str] = None,
    ) -> None:
        argv = ["mount"]
        if fstype:
            argv += ["-t", fstype]
        if options:
            argv += ["-o", options]
        await self.run(*argv, str(source), str(target))

    async def bind(self, source: Path, target: Path, recursive: bool = False) -> None:
        await self.run("mount", "--rbind" if recursive else "--bind", str(source), str(target))
        if recursive:
            # Keep host device events flowing in without leaking target unmounts back
            await self.run("mount", "--make-rslave", str(target), check=False)

    async def move(self, source: Path, target: Path) -> None:
        await self.run("mount", "--move", str(source), str(target))

    async def umount(self, target: Path, recursive: bool = False) -> None:
        argv = ["umount"]
        if recursive:
            argv.append("-R")
        await self.run(*argv, str(target))

    async def pivot_root(self, new_root: Path, put_old: Path) -> None:
        """Swap the root of every process still rooted at the current root."""
        await self.run("pivot_root", str(new_root), str(put_old))
        os.chdir("/")

    async def is_mountpoint(self, path: Path) -> bool:
        """Check /proc/self/mountinfo for a mount at path."""
        wanted = os.path.normpath(str(path))
        try:
            with open("/proc/self/mountinfo", "r", encoding="utf-8") as fh:
                for line in fh:
                    parts = line.split()
                    if len(parts) > 4 and parts[4].replace("\\040", " ") == wanted:
                        return True
        except OSError as e:
            self.logger.warning(f"Cannot read mountinfo: {e}")
        return False

    def is_dir(self, path: Path) -> bool:
        return Path(path).is_dir()

    def makedirs(self, path: Path) -> None:
        Path(path).mkdir(parents=True, exist_ok=True)

    def remove_dir(self, path: Path) -> None:
        """Remove an empty directory node, ignoring a missing one."""
        try:
            Path(path).rmdir()
        except FileNotFoundError:
            pass

    def remove_tree(self, path: Path) -> None:
        """Delete a directory tree. Callers unmount anything below it first."""
        shutil.rmtree(path, ignore_errors=True)

    def exists(self, path: Path) -> bool:
        return os.path.exists(path)

    def pid_alive(self, pid: int) -> bool:
        """Check whether pid still runs; reaps it first if it is our exited child."""
        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
            if reaped == pid:
                return False
        except ChildProcessError:
            pass
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def kill(self, pid: int, sig: int = signal.SIGTERM) -> None:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            self.logger.debug(f"Process {pid} already gone")

    def spawn_handler(self, entry: Callable[[], int]) -> int:
        """Fork a child that runs entry() and exits with its return code.

        The child keeps the Bootstrap-side state (mount set, store, bus)
        of the parent at the time of the fork.

        Returns:
            Child pid (in the parent)
        """
        pid = os.fork()
        if pid == 0:
            code = 1
            try:
                code = entry()
            except BaseException:
                self.logger.exception("Return handler crashed")
            finally:
                os._exit(code)
        self.logger.info(f"Return handler started (PID: {pid})")
        return pid

    def exec_init(self, init: str) -> NoReturn:
        """Replace this process with the target init.

        Raises:
            OSError: If the exec fails (the process is unchanged)
        """
        self.logger.info(f"Executing target init: {init}")
        for handler in logging.getLogger("booter").handlers:
            handler.flush()
        os.execv(init, [init])
