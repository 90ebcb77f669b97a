"""Image artifact models."""

from enum import Enum
from pathlib import Path
from pydantic import BaseModel, Field


class ImageFormat(str, Enum):
    ARCHIVE = "archive"
    SQUASHFS = "squashfs"


class ImageArtifact(BaseModel):
    """A downloaded image, complete on disk.

    Created by ImageAcquirer.fetch, consumed by ImageInstaller, deleted on
    cleanup after a failed load or after a return.
    """

    url: str = Field(..., pattern=r"^https?://.+", description="Source URL")
    local_path: Path = Field(..., description="Downloaded file")
    format: ImageFormat = Field(..., description="Install strategy")
    size: int = Field(..., ge=0, description="Bytes on disk")


class InstalledRoot(BaseModel):
    """A root tree ready to pivot into."""

    path: Path = Field(..., description="Mount point of the target root")
    init: str = Field(..., pattern=r"^/.*$", description="Init program, target-absolute")
    url: str = Field(..., description="Image it was installed from")
    format: ImageFormat
