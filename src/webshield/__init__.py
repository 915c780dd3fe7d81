"""Per-page content-filtering rule delivery and application for Playwright."""

from .config import ShieldConfig
from .models import RuleSet, RuleSource, ScriptletInvocation, get_hostname

__version__ = "0.1.0"

__all__ = [
    "RuleSet",
    "RuleSource",
    "ScriptletInvocation",
    "ShieldConfig",
    "get_hostname",
]
