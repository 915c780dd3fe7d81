"""Page side: messaging gateway, rule application and reporting."""

from .applier import PageRuleApplier
from .extended_css import ExtendedCssIntegration, format_extended_rules
from .gateway import LocalChannel, MessagingGateway, SocketChannel
from .report import ApplicationReport, CategoryStats
from .session import PageShield

__all__ = [
    "ApplicationReport",
    "CategoryStats",
    "ExtendedCssIntegration",
    "LocalChannel",
    "MessagingGateway",
    "PageRuleApplier",
    "PageShield",
    "SocketChannel",
    "format_extended_rules",
]
