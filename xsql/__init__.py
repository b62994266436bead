"""xsql: read-only-by-default SQL for operators and AI assistants."""

from __future__ import annotations

__version__ = "0.1.0"
__commit__ = "none"
__date__ = "unknown"

__all__ = ["__commit__", "__date__", "__version__"]
