"""Unit tests for main.py standalone lifespan startup."""

import logging
import stat

import pytest
from fastapi.testclient import TestClient

from booter.main import create_app
from booter.models.state import BootstrapState
from booter.models.status import PhaseEnum
from booter.services.state_store import StateStore


@pytest.fixture
def environment(tmp_path, monkeypatch):
    """Point every path the standalone app touches into tmp_path."""
    monkeypatch.setenv("BOOTER_CONFIG", str(tmp_path / "booter.json"))
    monkeypatch.setenv("BOOTER_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("BOOTER_FIFO_PATH", str(tmp_path / "run" / "return-signal"))
    monkeypatch.setenv("BOOTER_LOG_FILE", str(tmp_path / "log" / "booter.log"))
    yield tmp_path
    logger = logging.getLogger("booter")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


@pytest.mark.unit
class TestStandaloneLifespan:
    """Test startup without an attached controller."""

    def test_creates_state_and_fifo(self, environment):
        with TestClient(create_app()) as client:
            body = client.get("/api/v1.0/status").json()

        assert body["data"]["phase"] == "bootstrap"
        assert (environment / "state" / "state.json").exists()
        fifo = environment / "run" / "return-signal"
        assert stat.S_ISFIFO(fifo.stat().st_mode)

    def test_interrupted_pivot_reset(self, environment):
        """phase=target with no back-reference on disk means the pivot never finished."""
        StateStore(environment / "state" / "state.json").save(
            BootstrapState(phase=PhaseEnum.TARGET, target_pid=812, oldroot="/oldroot")
        )

        with TestClient(create_app()) as client:
            data = client.get("/api/v1.0/status").json()["data"]

        assert data["phase"] == "bootstrap"
        assert data["target_pid"] is None

    def test_log_file_written(self, environment):
        with TestClient(create_app()):
            pass

        assert "Bootstrap API starting up" in (environment / "log" / "booter.log").read_text()
