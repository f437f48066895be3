"""Configuration loading for Shepherd.

The config source is an INI file whose keys normally sit above any section
header. A ``[shepherd]`` section is accepted as a fallback so that the file
can be shared with other tools.
"""

from __future__ import annotations

import configparser
import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path

from shepherd._internal.errors import ConfigError, ConfigFileError, MissingPortError
from shepherd._internal.logging import get_logger, parse_log_level

logger = get_logger("config")

MAX_WORKER_PROCESSES = 256
MAX_WORKER_THREADS = 16

DEFAULT_LOG_MAX_SIZE = 64 << 20
DEFAULT_LOG_RETENTION_DAYS = 1
DEFAULT_GRACEFUL_TIMEOUT = 10.0

_ROOT_SECTION = "__root__"
_FALLBACK_SECTION = "shepherd"

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([A-Za-z]?)[Bb]?\s*$")
_SIZE_SHIFTS = {"K": 10, "M": 20, "G": 30}

_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "enable", "enabled", "y"})


@dataclass(frozen=True)
class LogSettings:
    """Logging parameters carried by a configuration snapshot.

    Attributes:
        logfile: Log file path, or None to log to stderr only.
        level: Numeric logging level.
        max_size: Rotate the log file once it reaches this many bytes.
        retention_days: Rotated files older than this are pruned (0 keeps all).
        fsync: Flush every record to stable storage.
    """

    logfile: Path | None = None
    level: int = logging.INFO
    max_size: int = DEFAULT_LOG_MAX_SIZE
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS
    fsync: bool = False


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable view of the service's tunable parameters.

    A snapshot is built once at startup and replaced wholesale on every
    successful reload; nothing ever mutates one in place.

    Attributes:
        worker_process_count: Worker processes to run, in
            ``[0, MAX_WORKER_PROCESSES]``. Zero selects inline mode.
        worker_thread_count: Threads per worker, in ``[0, MAX_WORKER_THREADS]``.
            Zero runs the entry function on the worker's main thread.
        listen_port: Service port, always positive.
        log: Logging parameters.
        graceful_timeout: Seconds a stopping worker gets before SIGKILL.
        version: Monotonic counter, bumped on each reload.
    """

    listen_port: int
    worker_process_count: int = 0
    worker_thread_count: int = 0
    log: LogSettings = field(default_factory=LogSettings)
    graceful_timeout: float = DEFAULT_GRACEFUL_TIMEOUT
    version: int = 1

    def same_topology(self, other: ConfigSnapshot) -> bool:
        """Return True if ``other`` needs no worker spawned or stopped."""
        return (
            self.worker_process_count == other.worker_process_count
            and self.worker_thread_count == other.worker_thread_count
        )

    def next_version(self, previous: ConfigSnapshot) -> ConfigSnapshot:
        """Return a copy numbered one past ``previous``."""
        return replace(self, version=previous.version + 1)


def clamp(value: int, low: int, high: int) -> int:
    """Clamp ``value`` into ``[low, high]``."""
    return max(low, min(value, high))


def parse_size(value: str) -> int | None:
    """Parse a human-friendly size into bytes.

    A bare number is taken as MiB. ``K``, ``M`` and ``G`` suffixes (with an
    optional trailing ``B``) select KiB, MiB and GiB. Unknown units fall
    back to MiB.

    Args:
        value: Raw string such as ``"16"``, ``"16K"``, ``"16MB"`` or ``"2G"``.

    Returns:
        Size in bytes, or None when the value is not a positive number.
    """
    match = _SIZE_RE.match(value)
    if match is None:
        return None

    number = int(match.group(1))
    if number <= 0:
        return None
    shift = _SIZE_SHIFTS.get(match.group(2).upper(), 20)
    return number << shift


def parse_bool(value: str) -> bool:
    """Interpret a config flag such as ``1``, ``yes``, ``on`` or ``enable``."""
    return value.strip().lower() in _TRUE_VALUES


def parse_worker_processes(value: str | None, *, cpu_count: int | None = None) -> int:
    """Resolve ``worker_processes`` into a clamped process count.

    Args:
        value: Raw config value: an integer, ``auto``, or None/empty for 0.
        cpu_count: CPU count used for ``auto``. Defaults to ``os.cpu_count()``.

    Returns:
        Process count in ``[0, MAX_WORKER_PROCESSES]``.

    Raises:
        ConfigError: If the value is neither an integer nor ``auto``.
    """
    if value is None or not value.strip():
        return 0
    if value.strip().lower() == "auto":
        count = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    else:
        count = _parse_int("worker_processes", value)
    return clamp(count, 0, MAX_WORKER_PROCESSES)


def parse_worker_threads(value: str | None) -> int:
    """Resolve ``worker_threads`` into ``[0, MAX_WORKER_THREADS]``."""
    if value is None or not value.strip():
        return 0
    return clamp(_parse_int("worker_threads", value), 0, MAX_WORKER_THREADS)


def resolve_port(override: int | None, value: str | None) -> int:
    """Pick the listen port: a positive override wins over the config file.

    Raises:
        MissingPortError: If neither source yields a positive port.
        ConfigError: If the configured port is not an integer.
    """
    port = override or 0
    if port <= 0 and value is not None and value.strip():
        port = _parse_int("port", value)
    if port <= 0:
        msg = "Please config listen port!"
        raise MissingPortError(msg)
    return port


def read_config_file(path: str | Path) -> dict[str, str]:
    """Read an INI file into a flat ``{key: value}`` mapping.

    Keys before the first section header win; keys from a ``[shepherd]``
    section fill in anything missing.

    Raises:
        ConfigFileError: If the file is missing, unreadable or malformed.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Load confile [{path}] failed: {exc.strerror or exc}"
        raise ConfigFileError(msg) from exc

    parser = configparser.ConfigParser(
        interpolation=None,
        default_section="__defaults__",
        inline_comment_prefixes=("#", ";"),
        strict=False,
    )
    try:
        parser.read_string(f"[{_ROOT_SECTION}]\n{text}", source=str(path))
    except configparser.Error as exc:
        msg = f"Load confile [{path}] failed: {exc}"
        raise ConfigFileError(msg) from exc

    values: dict[str, str] = {}
    if parser.has_section(_FALLBACK_SECTION):
        values.update(parser.items(_FALLBACK_SECTION))
    values.update(parser.items(_ROOT_SECTION))
    return values


def build_snapshot(
    values: dict[str, str],
    *,
    port_override: int | None = None,
    default_logfile: Path | None = None,
    base_dir: Path | None = None,
    cpu_count: int | None = None,
) -> ConfigSnapshot:
    """Validate raw config values and build a snapshot.

    Args:
        values: Flat key/value mapping from the config source.
        port_override: Port from the command line; wins when positive.
        default_logfile: Log file used when ``logfile`` is not configured.
        base_dir: Directory relative ``logfile`` paths are resolved against.
        cpu_count: CPU count used to resolve ``worker_processes = auto``.

    Returns:
        A new ConfigSnapshot with version 1.

    Raises:
        ConfigError: If any value is invalid.
        MissingPortError: If no listen port is available.
    """
    logfile = default_logfile
    if values.get("logfile"):
        logfile = Path(values["logfile"])
        if base_dir is not None and not logfile.is_absolute():
            logfile = base_dir / logfile

    max_size = DEFAULT_LOG_MAX_SIZE
    if values.get("log_filesize"):
        parsed = parse_size(values["log_filesize"])
        if parsed is None:
            logger.warning(
                "Ignoring log_filesize %r, keeping %d bytes", values["log_filesize"], DEFAULT_LOG_MAX_SIZE
            )
        else:
            max_size = parsed

    retention_days = DEFAULT_LOG_RETENTION_DAYS
    if values.get("log_remain_days"):
        retention_days = max(0, _parse_int("log_remain_days", values["log_remain_days"]))

    log = LogSettings(
        logfile=logfile,
        level=parse_log_level(values.get("loglevel")),
        max_size=max_size,
        retention_days=retention_days,
        fsync=parse_bool(values["log_fsync"]) if values.get("log_fsync") else False,
    )

    graceful_timeout = DEFAULT_GRACEFUL_TIMEOUT
    if values.get("graceful_timeout"):
        try:
            graceful_timeout = float(values["graceful_timeout"])
        except ValueError:
            msg = f"graceful_timeout must be a number, got: {values['graceful_timeout']!r}"
            raise ConfigError(msg) from None
        if graceful_timeout <= 0:
            msg = f"graceful_timeout must be positive, got: {graceful_timeout}"
            raise ConfigError(msg)

    return ConfigSnapshot(
        listen_port=resolve_port(port_override, values.get("port")),
        worker_process_count=parse_worker_processes(
            values.get("worker_processes"), cpu_count=cpu_count
        ),
        worker_thread_count=parse_worker_threads(values.get("worker_threads")),
        log=log,
        graceful_timeout=graceful_timeout,
    )


def load_snapshot(
    path: str | Path,
    *,
    port_override: int | None = None,
    default_logfile: Path | None = None,
    cpu_count: int | None = None,
) -> ConfigSnapshot:
    """Load and validate a configuration file.

    Relative ``logfile`` paths are resolved against the parent of the
    config file's directory (``<run_dir>/etc/x.conf`` → ``<run_dir>``).

    Returns:
        Populated ConfigSnapshot instance.

    Raises:
        ConfigFileError: If the file cannot be loaded.
        ConfigError: If a value is invalid.
        MissingPortError: If no listen port is available.
    """
    path = Path(path)
    return build_snapshot(
        read_config_file(path),
        port_override=port_override,
        default_logfile=default_logfile,
        base_dir=path.resolve().parent.parent,
        cpu_count=cpu_count,
    )


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        msg = f"{key} must be an integer, got: {value!r}"
        raise ConfigError(msg) from None
