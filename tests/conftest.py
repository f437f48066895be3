"""Shared test fixtures for the Shepherd test suite."""

from __future__ import annotations

import logging
import signal
from typing import TYPE_CHECKING

import pytest

from shepherd.engine.context import ServiceContext

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path


# =============================================================================
# Pytest configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-apply markers based on test directory structure."""
    for item in items:
        test_path = str(item.fspath)
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in test_path:
            item.add_marker(pytest.mark.e2e)


_TOUCHED_SIGNALS = (
    signal.SIGTERM,
    signal.SIGINT,
    signal.SIGQUIT,
    signal.SIGHUP,
    signal.SIGUSR1,
    signal.SIGUSR2,
    signal.SIGCHLD,
)


@pytest.fixture(autouse=True)
def _isolate_process_state() -> Iterator[None]:
    """Restore signal handlers and the ``shepherd`` logger after each test."""
    saved = {sig: signal.getsignal(sig) for sig in _TOUCHED_SIGNALS}
    logger = logging.getLogger("shepherd")
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate

    yield

    for sig, handler in saved.items():
        signal.signal(sig, handler)
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    logger.propagate = propagate


# =============================================================================
# Configuration fixtures
# =============================================================================


def render_config(**values: object) -> str:
    """Render keyword arguments as ``key = value`` lines."""
    return "".join(f"{key} = {value}\n" for key, value in values.items())


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing ``<tmp>/etc/shepherd.conf`` from keyword arguments.

    Calling it again overwrites the same file, which is how tests simulate
    an operator editing the config before a reload.
    """

    def _write(**values: object) -> Path:
        path = tmp_path / "etc" / "shepherd.conf"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_config(**values))
        return path

    return _write


@pytest.fixture
def service_context(tmp_path: Path, write_config: Callable[..., Path]) -> ServiceContext:
    """Context rooted in ``tmp_path`` with a small two-worker config loaded."""
    confile = write_config(worker_processes=2, worker_threads=0, port=8080, graceful_timeout=2)
    context = ServiceContext.create(run_dir=tmp_path, confile=confile)
    context.load_snapshot()
    return context
