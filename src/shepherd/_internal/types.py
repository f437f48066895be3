"""Shared type aliases for Shepherd."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

# User-supplied worker entry point, called with a single opaque argument.
EntryFunction = Callable[[Any], object]

# Zero-argument callback run outside of signal context.
Callback = Callable[[], None]
