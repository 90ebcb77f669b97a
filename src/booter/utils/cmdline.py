"""Kernel command line options understood by the bootstrap image."""

import logging
import shlex
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


class BootOptions(BaseModel):
    """Options picked up from /proc/cmdline at bootstrap start.

    Example:
        ``console=ttyS0 image_url=http://srv/images/rocky-8.tar.gz bootstrap_debug``
    """

    image_url: Optional[str] = Field(
        None, description="Image to load automatically on boot"
    )
    debug: bool = Field(False, description="bootstrap_debug flag present")


def parse_cmdline(text: str) -> dict[str, Optional[str]]:
    """Split a kernel command line into a dict.

    Bare flags map to None; for repeated keys the last one wins, as the
    kernel does.
    """
    options: dict[str, Optional[str]] = {}
    try:
        tokens = shlex.split(text)
    except ValueError:
        # Unbalanced quotes: fall back to plain whitespace split
        tokens = text.split()

    for token in tokens:
        key, sep, value = token.partition("=")
        options[key] = value if sep else None
    return options


def read_boot_options(path: str = "/proc/cmdline") -> BootOptions:
    """Read BootOptions from the running kernel's command line.

    Returns:
        BootOptions (empty if the file cannot be read)
    """
    logger = logging.getLogger("booter.cmdline")
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return BootOptions()

    options = parse_cmdline(text)
    boot_options = BootOptions(
        image_url=options.get("image_url") or None,
        debug="bootstrap_debug" in options,
    )
    logger.debug(f"Boot options: {boot_options.model_dump()}")
    return boot_options
