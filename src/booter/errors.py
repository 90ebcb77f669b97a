"""Error taxonomy for load/pivot/return operations.

Every error carries a short ``code`` used as message prefix on the console
and in the status API (e.g. ``MOUNT_FAILED: cannot mount squashfs ...``).
"""

from typing import Optional


class BooterError(Exception):
    """Base class for all bootstrap errors."""

    code = "BOOTER_ERROR"

    def __init__(self, message: str, *, state: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.state = state or {}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NetworkError(BooterError):
    """Image URL unreachable, rejected or returned an HTTP error status."""

    code = "NETWORK_ERROR"


class DownloadError(NetworkError):
    """Transfer failed or ended short; no file is left at the destination."""

    code = "DOWNLOAD_FAILED"


class FormatError(BooterError):
    """Image is not usable as a root filesystem (e.g. no init program)."""

    code = "FORMAT_ERROR"


class MountError(BooterError):
    code = "MOUNT_FAILED"


class ExtractionError(BooterError):
    code = "EXTRACTION_FAILED"


class PivotError(BooterError):
    code = "PIVOT_FAILED"


class ReversePivotError(BooterError):
    code = "REVERSE_PIVOT_FAILED"


class PivotBusyError(BooterError):
    """A forward pivot or return is already in flight."""

    code = "PIVOT_IN_PROGRESS"


class NotInTargetError(BooterError):
    code = "NOT_IN_TARGET"


class ChannelError(BooterError):
    """Control channel missing, not a FIFO, or nobody is reading it."""

    code = "CHANNEL_ERROR"


class CommandError(BooterError):
    """An OS primitive (mount, umount, pivot_root, ...) exited non-zero."""

    code = "COMMAND_FAILED"

    def __init__(self, argv: list[str], returncode: int, stderr: str = "") -> None:
        detail = stderr.strip() or "no output"
        super().__init__(f"{' '.join(argv)} exited {returncode}: {detail}")
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr
