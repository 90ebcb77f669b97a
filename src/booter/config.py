"""Runtime configuration for the bootstrap services."""

import json
import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "/etc/booter.json"
ENV_PREFIX = "BOOTER_"

DEFAULT_INIT_CANDIDATES = [
    "/sbin/init",
    "/usr/sbin/init",
    "/usr/lib/systemd/systemd",
    "/bin/init",
    "/usr/bin/init",
]

DEFAULT_SERIAL_DEVICES = ["/dev/ttyS0", "/dev/ttyS1", "/dev/ttyUSB0"]


class BooterConfig(BaseModel):
    """Paths and constants shared by every component.

    Paths are as seen from the Bootstrap root. After a forward pivot the
    same locations are reached through the old-root back-reference
    (``/<oldroot_name><path>``).
    """

    state_dir: Path = Field(
        Path("/var/run/bootstrap"), description="Directory holding state.json"
    )
    fifo_path: Path = Field(
        Path("/var/run/return-signal"), description="Control channel named pipe"
    )
    newroot: Path = Field(Path("/newroot"), description="Where the target root is assembled")
    image_dir: Path = Field(
        Path("/mnt/images"), description="Downloaded images and squashfs/overlay mounts"
    )
    bootstrap_root: Path = Field(
        Path("/"), description="Bootstrap root, receives the .bootstrap-id marker"
    )
    oldroot_name: str = Field(
        "oldroot", pattern=r"^[^/]+$", description="Back-reference directory inside the target"
    )
    reverse_oldroot_name: str = Field(
        "old-target", pattern=r"^[^/]+$", description="Temporary node receiving the target on return"
    )
    init_candidates: list[str] = Field(default_factory=lambda: list(DEFAULT_INIT_CANDIDATES))

    grace_period: float = Field(10.0, gt=0, description="Cooperative target shutdown wait (s)")
    heal_delay: float = Field(1.0, gt=0, description="Control channel recreate delay (s)")
    http_timeout: float = Field(30.0, gt=0)

    magic_token: str = Field("RETURN_TO_BOOTSTRAP", min_length=1)
    serial_devices: list[str] = Field(default_factory=lambda: list(DEFAULT_SERIAL_DEVICES))
    serial_baudrate: int = Field(115200, gt=0)
    console_device: str = "/dev/console"
    input_device_glob: str = "/dev/input/event*"
    tty_glob: str = "/dev/tty[0-9]*"

    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = Field(12315, gt=0, lt=65536)

    log_file: str = "/var/log/booter/booter.log"
    log_level: str = Field("INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR)$")

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / "serve.pid"

    @property
    def artifact_path(self) -> Path:
        return self.image_dir / "downloaded-image"

    @property
    def backref(self) -> Path:
        """Old-root back-reference as seen from inside the target."""
        return Path("/") / self.oldroot_name

    def via_backref(self, path: Path) -> Path:
        """Translate a Bootstrap path into its location seen from the target."""
        return self.backref / Path(path).relative_to("/")

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "BooterConfig":
        """Build config from an optional JSON file plus BOOTER_* overrides.

        Args:
            path: JSON config file (default: $BOOTER_CONFIG or /etc/booter.json)
            environ: Environment mapping (default: os.environ)

        Returns:
            Validated BooterConfig

        Raises:
            ValueError: If the file is not valid JSON or a value fails validation
        """
        logger = logging.getLogger("booter.config")
        environ = os.environ if environ is None else environ
        config_path = Path(path or environ.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH))

        data: dict = {}
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid config file {config_path}: {e}") from e
            logger.debug(f"Loaded config file {config_path}")

        for name, field in cls.model_fields.items():
            env_key = f"{ENV_PREFIX}{name.upper()}"
            if env_key not in environ:
                continue
            value = environ[env_key]
            if field.annotation == list[str]:
                data[name] = [item.strip() for item in value.split(",") if item.strip()]
            else:
                data[name] = value

        return cls(**data)
