from __future__ import annotations

__version__ = "0.1.0"

from autorebase.autorebase import Autorebase, handle_event, run  # noqa: E402

__all__ = ["Autorebase", "__version__", "handle_event", "run"]
