from __future__ import annotations

from typing import Any, Optional

from ..config import Settings, settings as default_settings
from ..hosts.base import Host
from .expander import Expander
from .simple import SimpleExpander


def create_expander(host: Host, settings: Optional[Settings] = None, **overrides: Any) -> Expander:
    """Build the expander for the configured mode."""
    settings = settings or default_settings
    cls = SimpleExpander if settings.mode == "simple" else Expander
    return cls.from_settings(host, settings, **overrides)
