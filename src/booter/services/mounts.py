"""Ordered tracking of the mounts a pivot creates.

Undo order is always the exact reverse of mount order, so a failure at any
point can be rolled back deterministically.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional
import logging

from pydantic import BaseModel, Field

from booter.errors import CommandError
from booter.services.system import SystemOps


class MountKind(str, Enum):
    """Role of a mount in the target topology.

    image: backing mounts of the root (squashfs lower layer, overlay tmpfs)
    root:  the target root itself
    fresh: filesystems mounted fresh for the target (/run, fallback /proc)
    bind:  bind mounts (recursive ones are detached with umount -R)
    move:  Bootstrap filesystems re-homed into the target; undone by moving back
    """

    IMAGE = "image"
    ROOT = "root"
    FRESH = "fresh"
    BIND = "bind"
    MOVE = "move"


class MountRecord(BaseModel):
    target: str = Field(..., description="Mount point, in the current root's view")
    kind: MountKind
    source: str = Field("", description="Device/fs source, or origin for moves")
    fstype: Optional[str] = None
    recursive: bool = False


def pivot_path(path: str, new_root: str, put_old: str) -> str:
    """Where an absolute path ends up after pivot_root(new_root, put_old)."""
    path = os.path.normpath(path)
    new_root = os.path.normpath(new_root)
    if path == new_root or path.startswith(new_root.rstrip("/") + "/"):
        rel = os.path.relpath(path, new_root)
        return "/" if rel == "." else "/" + rel
    old_view = "/" + os.path.relpath(os.path.normpath(put_old), new_root)
    if path == "/":
        return old_view
    return old_view + path


class MountSet:
    """Active mounts created for the target, in mount order."""

    def __init__(self, system: SystemOps):
        self.logger = logging.getLogger("booter.mounts")
        self.system = system
        self._records: list[MountRecord] = []

    @property
    def records(self) -> list[MountRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def find(self, kind: MountKind) -> list[MountRecord]:
        return [r for r in self._records if r.kind == kind]

    async def mount(
        self,
        source: str,
        target: Path,
        fstype: Optional[str] = None,
        options: Optional[str] = None,
        kind: MountKind = MountKind.FRESH,
    ) -> MountRecord:
        await self.system.mount(source, target, fstype=fstype, options=options)
        record = MountRecord(target=str(target), kind=kind, source=str(source), fstype=fstype)
        self._records.append(record)
        self.logger.debug(f"Mounted {record.source} at {record.target} ({kind.value})")
        return record

    async def bind(
        self,
        source: Path,
        target: Path,
        recursive: bool = False,
        kind: MountKind = MountKind.BIND,
    ) -> MountRecord:
        await self.system.bind(source, target, recursive=recursive)
        record = MountRecord(
            target=str(target), kind=kind, source=str(source), recursive=recursive
        )
        self._records.append(record)
        self.logger.debug(f"Bound {record.source} at {record.target}")
        return record

    async def move(self, source: Path, target: Path) -> MountRecord:
        await self.system.move(source, target)
        record = MountRecord(target=str(target), kind=MountKind.MOVE, source=str(source))
        self._records.append(record)
        self.logger.debug(f"Moved {record.source} to {record.target}")
        return record

    async def release(self, record: MountRecord) -> None:
        """Undo one mount and forget it, even if the undo fails.

        Raises:
            CommandError: If the underlying umount/move fails
        """
        self._records.remove(record)
        if record.kind == MountKind.MOVE:
            await self.system.move(Path(record.target), Path(record.source))
        else:
            recursive = record.recursive or record.kind == MountKind.ROOT
            await self.system.umount(Path(record.target), recursive=recursive)

    async def unwind_top(self, kinds: Iterable[MountKind]) -> list[MountRecord]:
        """Release records from the top of the stack while their kind matches.

        Stops at the first record of another kind, so ordering is never
        violated. Each release is best-effort.

        Returns:
            Records whose release failed
        """
        kinds = set(kinds)
        failed: list[MountRecord] = []
        while self._records and self._records[-1].kind in kinds:
            record = self._records[-1]
            try:
                await self.release(record)
            except CommandError as e:
                self.logger.warning(f"Could not release {record.target}: {e}")
                failed.append(record)
        return failed

    async def unwind(self) -> list[MountRecord]:
        """Release everything, newest first (rollback path).

        Returns:
            Records whose release failed
        """
        return await self.unwind_top(list(MountKind))

    def rebase(self, new_root: Path, put_old: Path) -> None:
        """Rewrite tracked paths for the view after pivot_root(new_root, put_old)."""
        for record in self._records:
            record.target = pivot_path(record.target, str(new_root), str(put_old))
            if record.kind == MountKind.MOVE:
                record.source = pivot_path(record.source, str(new_root), str(put_old))

    def forget(self, record: MountRecord) -> None:
        """Stop tracking a mount that must outlive the target."""
        self._records.remove(record)
