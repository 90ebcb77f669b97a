"""Turn a downloaded image into a root tree ready to pivot into."""

import asyncio
import lzma
import os
import shutil
import tarfile
import tempfile
import zlib
from pathlib import Path
from typing import Optional
import logging

from booter.config import DEFAULT_INIT_CANDIDATES
from booter.errors import CommandError, ExtractionError, FormatError, MountError
from booter.models.artifact import ImageArtifact, ImageFormat, InstalledRoot
from booter.services.mounts import MountKind, MountSet

# Bootstrap virtual filesystems re-homed into the target by the pivot
VIRTUAL_DIRS = ("proc", "sys", "dev")

_EXTRACT_ERRORS = (tarfile.TarError, OSError, EOFError, zlib.error, lzma.LZMAError)


class ImageInstaller:
    """Format-dependent install strategies (squashfs mount, archive extraction)."""

    def __init__(
        self,
        mounts: MountSet,
        image_dir: Path,
        init_candidates: Optional[list[str]] = None,
    ):
        """Initialize installer.

        Args:
            mounts: MountSet receiving every mount made for the target
            image_dir: Directory for squashfs lower layer and overlay scratch space
            init_candidates: Target-absolute init paths, in preference order
        """
        self.logger = logging.getLogger("booter.installer")
        self.mounts = mounts
        self.image_dir = Path(image_dir)
        self.init_candidates = init_candidates or list(DEFAULT_INIT_CANDIDATES)

    async def install(self, artifact: ImageArtifact, newroot: Path) -> InstalledRoot:
        """Install artifact at newroot and make it a pivotable mount point.

        Raises:
            MountError: If a mount fails
            ExtractionError: If the archive cannot be extracted
            FormatError: If no init program is found
        """
        newroot = Path(newroot)
        self.logger.info(f"Installing {artifact.format.value} image at {newroot}")

        if artifact.format == ImageFormat.SQUASHFS:
            await self._install_squashfs_overlay(artifact, newroot)
        else:
            await self.install_archive(artifact, newroot)
            # pivot_root wants a mount point; an extracted tree is a plain directory
            try:
                await self.mounts.bind(newroot, newroot, kind=MountKind.ROOT)
            except CommandError as e:
                raise MountError(f"Cannot bind {newroot} onto itself: {e}") from e

        init = self.find_init(newroot)
        self.logger.info(f"Target init: {init}")
        return InstalledRoot(path=newroot, init=init, url=artifact.url, format=artifact.format)

    async def install_squashfs(self, artifact: ImageArtifact, mountpoint: Path) -> None:
        """Mount a squashfs image read-only.

        Nothing is recorded unless the mount succeeded.

        Raises:
            MountError: On a corrupt or unsupported image
        """
        mountpoint = Path(mountpoint)
        mountpoint.mkdir(parents=True, exist_ok=True)
        try:
            await self.mounts.mount(
                str(artifact.local_path),
                mountpoint,
                fstype="squashfs",
                options="ro,loop",
                kind=MountKind.IMAGE,
            )
        except CommandError as e:
            raise MountError(f"Failed to mount squashfs {artifact.local_path}: {e}") from e
        self.logger.info(f"Squashfs mounted at {mountpoint}")

    async def _install_squashfs_overlay(self, artifact: ImageArtifact, newroot: Path) -> None:
        """Squashfs lower layer + tmpfs upper layer, overlay at newroot.

        The target gets a writable root; its changes vanish on return.
        """
        lower = self.image_dir / "squashfs"
        scratch = self.image_dir / "overlay"
        await self.install_squashfs(artifact, lower)

        try:
            scratch.mkdir(parents=True, exist_ok=True)
            await self.mounts.mount("tmpfs", scratch, fstype="tmpfs", kind=MountKind.IMAGE)
            (scratch / "upper").mkdir(exist_ok=True)
            (scratch / "work").mkdir(exist_ok=True)
            newroot.mkdir(parents=True, exist_ok=True)
            await self.mounts.mount(
                "overlay",
                newroot,
                fstype="overlay",
                options=f"lowerdir={lower},upperdir={scratch}/upper,workdir={scratch}/work",
                kind=MountKind.ROOT,
            )
        except CommandError as e:
            raise MountError(f"Failed to stack overlay on {lower}: {e}") from e

    async def install_archive(self, artifact: ImageArtifact, dest_dir: Path) -> int:
        """Stream-extract a tar archive into dest_dir.

        Extraction happens in a staging directory next to dest_dir which is
        renamed onto dest_dir only when complete; on failure it is purged.
        dest_dir is never left half-populated.

        Returns:
            Number of archive members extracted

        Raises:
            ExtractionError: On a corrupt archive, a full disk or a non-empty dest_dir
        """
        dest_dir = Path(dest_dir)
        if dest_dir.exists() and any(dest_dir.iterdir()):
            raise ExtractionError(f"Destination {dest_dir} is not empty")

        dest_dir.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(prefix=f".{dest_dir.name}.staging-", dir=dest_dir.parent)
        )
        self.logger.info(f"Extracting {artifact.local_path} (staging at {staging})")

        try:
            count = await asyncio.to_thread(self._extract, Path(artifact.local_path), staging)
            if dest_dir.exists():
                dest_dir.rmdir()
            os.replace(staging, dest_dir)
        except _EXTRACT_ERRORS as e:
            shutil.rmtree(staging, ignore_errors=True)
            self.logger.error(f"Extraction failed, staging purged: {e}")
            raise ExtractionError(f"Cannot extract {artifact.local_path}: {e}") from e

        # mkdtemp creates 0700; a root filesystem must be traversable
        dest_dir.chmod(0o755)
        self.logger.info(f"Extraction complete: {count} entries")
        return count

    def _extract(self, archive: Path, dest: Path) -> int:
        count = 0
        with tarfile.open(archive, mode="r|*") as tar:
            for member in tar:
                # Root images carry device nodes, setuid bits and absolute symlinks
                tar.extract(member, dest, filter="fully_trusted")
                count += 1
                if count % 1000 == 0:
                    self.logger.debug(f"Extracted {count} files")
        return count

    def find_init(self, root: Path) -> str:
        """Return the first init candidate that is an executable file in root.

        Symlinks are resolved inside root, not against the Bootstrap root.

        Raises:
            FormatError: If no candidate exists
        """
        for candidate in self.init_candidates:
            resolved = self._resolve_in_root(Path(root), candidate)
            if resolved is not None and resolved.is_file() and os.access(resolved, os.X_OK):
                return candidate
        raise FormatError(
            f"No init program in {root} (tried {', '.join(self.init_candidates)})"
        )

    @staticmethod
    def _resolve_in_root(root: Path, target_path: str, max_links: int = 16) -> Optional[Path]:
        current = target_path
        for _ in range(max_links):
            host_path = root / current.lstrip("/")
            if not host_path.is_symlink():
                return host_path if host_path.exists() else None
            link = os.readlink(host_path)
            if link.startswith("/"):
                current = link
            else:
                current = os.path.normpath(os.path.join(os.path.dirname(current), link))
        return None

    async def mount_essentials(self, root: Path) -> None:
        """Prepare the target's runtime mounts before the pivot.

        /run gets a fresh tmpfs; /proc, /sys and /dev only need to exist,
        the pivot re-homes the Bootstrap ones into them.

        Raises:
            MountError: If /run cannot be mounted
        """
        root = Path(root)
        self.logger.info("Mounting essential filesystems in target...")
        for name in VIRTUAL_DIRS + ("run",):
            (root / name).mkdir(exist_ok=True)
        try:
            await self.mounts.mount("tmpfs", root / "run", fstype="tmpfs", kind=MountKind.FRESH)
        except CommandError as e:
            raise MountError(f"Cannot mount tmpfs on {root / 'run'}: {e}") from e
