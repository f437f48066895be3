"""Tests for ServiceContext."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import pytest

from shepherd._internal.errors import ConfigError
from shepherd.engine.context import ServiceContext


class TestCreate:
    """Tests for ServiceContext.create defaults."""

    def test_defaults_from_run_dir(self, tmp_path: Path):
        context = ServiceContext.create(run_dir=tmp_path)
        assert context.confile == tmp_path.resolve() / "etc" / "shepherd.conf"
        assert context.pidfile == tmp_path.resolve() / "logs" / "shepherd.pid"
        assert context.status_file == tmp_path.resolve() / "logs" / "shepherd.pid.status"
        assert context.default_logfile == tmp_path.resolve() / "logs" / "shepherd.log"
        assert context.snapshot is None

    def test_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SHEPHERD_RUN_DIR", str(tmp_path))
        monkeypatch.setenv("SHEPHERD_PIDFILE", str(tmp_path / "run" / "m.pid"))
        context = ServiceContext.create("svc")
        assert context.run_dir == tmp_path.resolve()
        assert context.confile == tmp_path.resolve() / "etc" / "svc.conf"
        assert context.pidfile == tmp_path / "run" / "m.pid"

    def test_non_positive_port_override_ignored(self, tmp_path: Path):
        assert ServiceContext.create(run_dir=tmp_path, port_override=0).port_override is None


class TestSnapshots:
    """Tests for loading and re-reading the configuration."""

    def test_load_snapshot(self, service_context: ServiceContext):
        snapshot = service_context.snapshot
        assert snapshot is not None
        assert snapshot.worker_process_count == 2
        assert snapshot.listen_port == 8080
        assert snapshot.log.logfile == service_context.default_logfile

    def test_read_snapshot_bumps_version(
        self, service_context: ServiceContext, write_config: Callable[..., Path]
    ):
        write_config(worker_processes=5, port=8080)
        snapshot = service_context.read_snapshot()
        assert snapshot.version == 2
        assert snapshot.worker_process_count == 5
        assert service_context.snapshot.worker_process_count == 2

    def test_port_override(self, tmp_path: Path, write_config: Callable[..., Path]):
        confile = write_config(port=8080)
        context = ServiceContext.create(run_dir=tmp_path, confile=confile, port_override=9999)
        assert context.load_snapshot().listen_port == 9999

    def test_load_failure_raises(self, tmp_path: Path):
        context = ServiceContext.create(run_dir=tmp_path)
        with pytest.raises(ConfigError):
            context.load_snapshot()

    def test_try_read_snapshot_logs_and_returns_none(
        self,
        service_context: ServiceContext,
        write_config: Callable[..., Path],
        caplog: pytest.LogCaptureFixture,
    ):
        write_config(worker_processes="lots", port=8080)
        logging.getLogger("shepherd").propagate = True
        with caplog.at_level(logging.ERROR, logger="shepherd"):
            assert service_context.try_read_snapshot() is None
        assert "keeping current config" in caplog.text
        assert service_context.snapshot.worker_process_count == 2
