"""Durable store for the Bootstrap state record."""

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional
import logging

from booter.models.state import BootstrapState
from booter.models.status import PhaseEnum


class StateStore:
    """Owner of <state_dir>/state.json.

    Only PivotController writes through this object; everything else gets a
    StateReader from reader(). The store is passed by reference so the
    controller can rebind it to the back-reference path after a pivot
    without the readers noticing.
    """

    def __init__(self, state_file: Path):
        """Initialize state store.

        Args:
            state_file: Path to state.json (Bootstrap view)
        """
        self.logger = logging.getLogger("booter.state_store")
        self.state_file_path = Path(state_file)
        self._state: Optional[BootstrapState] = None

    def initialize(self) -> BootstrapState:
        """Load the persisted record or create a fresh Bootstrap one.

        Returns:
            The current state (persisted)
        """
        state = self.load()
        if state is None:
            state = BootstrapState(phase=PhaseEnum.BOOTSTRAP, boot_time=datetime.now())
            self.save(state)
            self.logger.info("Created fresh bootstrap state")
        return state

    def load(self) -> Optional[BootstrapState]:
        """Load persistent state from disk.

        Returns:
            BootstrapState if exists and valid, None otherwise
        """
        if not self.state_file_path.exists():
            self.logger.debug(f"No state file at {self.state_file_path}")
            return None

        try:
            with open(self.state_file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = BootstrapState(**data)
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to load state file: {e}", exc_info=True)
            # Corrupted state file, start over from a fresh record
            self.state_file_path.unlink(missing_ok=True)
            return None

        self._state = state
        self.logger.debug(f"Loaded state: phase={state.phase.value}, pid={state.target_pid}")
        return state

    def get(self) -> BootstrapState:
        """Current state without touching disk unless nothing is cached."""
        if self._state is None:
            return self.load() or BootstrapState()
        return self._state

    def save(self, state: BootstrapState) -> None:
        """Persist state atomically (temp file + rename).

        Args:
            state: BootstrapState to persist
        """
        tmp_path = self.state_file_path.with_name(f".{self.state_file_path.name}.tmp")
        try:
            self.state_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(state.model_dump(mode="json"), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.state_file_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            self.logger.error(f"Failed to save state file: {e}", exc_info=True)
            raise

        self._state = state
        self.logger.debug(f"Saved state: phase={state.phase.value}, pid={state.target_pid}")

    def update(self, **changes) -> BootstrapState:
        """Apply field changes to the current record and persist it.

        Returns:
            The new state
        """
        state = self.get().model_copy(update=changes)
        # model_copy skips validation; round-trip to catch bad values early
        state = BootstrapState(**state.model_dump())
        self.save(state)
        return state

    def rebind(self, state_file: Path) -> None:
        """Point the store at another path for the same record.

        Used when the Bootstrap root moves under the back-reference (and
        back). The cached record stays; nothing is written.
        """
        self.logger.info(f"State store rebound: {self.state_file_path} -> {state_file}")
        self.state_file_path = Path(state_file)

    def reader(self) -> "StateReader":
        return StateReader(self)


class StateReader:
    """Read-only view of a StateStore.

    Reads go to disk so a reader in another process (API, CLI) sees what
    the controller last persisted.
    """

    def __init__(self, store: StateStore):
        self._store = store

    def get(self) -> BootstrapState:
        path = self._store.state_file_path
        if not path.exists():
            return self._store.get()
        try:
            with open(path, "r", encoding="utf-8") as f:
                return BootstrapState(**json.load(f))
        except (OSError, ValueError):
            # Mid-replace or corrupted; the cached record is the best answer
            return self._store.get()

    def phase(self) -> PhaseEnum:
        return self.get().phase

    def status_text(self) -> str:
        return self.get().to_status_text()
