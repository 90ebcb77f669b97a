"""Files written into the target root before the pivot."""

import time
from pathlib import Path
import logging

MARKER_NAME = ".bootstrap-id"
HELPER_NAME = ".bootstrap-return"
UNIT_NAME = "bootstrap-return.service"

RETURN_HELPER = """#!/bin/sh
# Return to bootstrap - run from within the target system
FIFO={fifo}

if [ -p "$FIFO" ]; then
    echo "Returning to bootstrap..."
    echo "return helper" > "$FIFO"
else
    echo "Not running in chroot-booter environment" >&2
    exit 1
fi
"""

SYSTEMD_UNIT = """[Unit]
Description=Chroot Booter Return Service
After=multi-user.target

[Service]
Type=oneshot
ExecStart=/bin/true
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""


def write_target_hooks(target_root: Path, bootstrap_root: Path, fifo_in_target: Path) -> str:
    """Install the in-target return helper and the environment markers.

    Args:
        target_root: Installed root (Bootstrap view)
        bootstrap_root: Bootstrap root, receives the same marker
        fifo_in_target: Control channel path as seen from the target

    Returns:
        The marker value written to both roots
    """
    logger = logging.getLogger("booter.target_hooks")
    target_root = Path(target_root)
    logger.info("Setting up return mechanism in target...")

    helper = target_root / HELPER_NAME
    helper.write_text(RETURN_HELPER.format(fifo=fifo_in_target), encoding="utf-8")
    helper.chmod(0o755)

    unit_dir = target_root / "etc" / "systemd" / "system"
    if unit_dir.is_dir():
        (unit_dir / UNIT_NAME).write_text(SYSTEMD_UNIT, encoding="utf-8")
        logger.debug(f"Installed {UNIT_NAME}")

    marker = f"chroot-booter-{int(time.time())}"
    for root in (target_root, Path(bootstrap_root)):
        (root / MARKER_NAME).write_text(marker + "\n", encoding="utf-8")

    return marker
