"""Custom exception hierarchy for Shepherd."""

from __future__ import annotations

# Process exit codes used by the command-line front end.
EXIT_NO_ARGS = 10
EXIT_CONTROL = 1
EXIT_STARTUP = -10
EXIT_CONFIG = -40


class ShepherdError(Exception):
    """Base exception for all Shepherd errors.

    All custom exceptions in Shepherd inherit from this class, making it
    easy to catch any Shepherd-specific error with a single except clause.
    Fatal subclasses carry the process exit code the CLI terminates with.
    """

    exit_code: int = EXIT_CONTROL


class ConfigError(ShepherdError):
    """Raised when a configuration value is invalid.

    At startup this is fatal. During a reload it is logged and the
    previously active snapshot stays authoritative.

    Examples:
        - ``worker_processes`` is neither an integer nor ``auto``.
        - ``graceful_timeout`` is not a positive number.
    """

    exit_code = EXIT_CONFIG


class ConfigFileError(ConfigError):
    """Raised when the configuration file cannot be loaded.

    Examples:
        - The file does not exist or is not readable.
        - The file is not valid INI syntax.
    """


class MissingPortError(ConfigError):
    """Raised when no listen port is given on the command line or in config."""

    exit_code = EXIT_STARTUP


class DaemonizeError(ShepherdError):
    """Raised when detaching from the controlling terminal fails."""

    exit_code = EXIT_STARTUP


class ControlError(ShepherdError):
    """Raised when a control command cannot be delivered.

    Examples:
        - ``stop`` is sent but no master is running.
        - The pid file points at a process we may not signal.
    """


class OrchestratorError(ShepherdError):
    """Raised when the master orchestrator is driven incorrectly.

    Examples:
        - ``launch()`` is called while workers are already running.
    """
