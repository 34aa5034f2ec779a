"""
ConnectorRegistry — discovers and provides access to ad-platform connectors.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from connectors.base import BaseAdConnector
from connectors.meta import MetaLeadAdsConnector

logger = logging.getLogger(__name__)


def _default_connectors() -> List[BaseAdConnector]:
    # Add new ad platforms here.
    return [MetaLeadAdsConnector()]


class ConnectorRegistry:
    """Process-wide singleton mapping platform slug → connector."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            inst = super().__new__(cls)
            inst._connectors: Dict[str, BaseAdConnector] = {}
            inst._known: List[BaseAdConnector] = _default_connectors()
            inst._discovered = False
            cls._instance = inst
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Destroy singleton — only useful in test teardown."""
        cls._instance = None

    def discover(self) -> None:
        """Register every connector that has its app credentials configured."""
        if self._discovered:
            return
        for conn in self._known:
            if conn.is_configured():
                self._connectors[conn.provider_name] = conn
                logger.info("Connector registered: %s (%s)", conn.display_name, conn.provider_name)
            else:
                logger.warning(
                    "Connector %s skipped — not configured (missing app id/secret)",
                    conn.provider_name,
                )
        self._discovered = True

    def register(self, connector: BaseAdConnector) -> None:
        """Register a connector explicitly (bypasses the configuration check)."""
        self._connectors[connector.provider_name] = connector
        if all(c.provider_name != connector.provider_name for c in self._known):
            self._known.append(connector)

    def get(self, platform: str) -> Optional[BaseAdConnector]:
        return self._connectors.get(platform)

    def list_providers(self) -> List[Dict[str, object]]:
        return [
            {
                "platform": c.provider_name,
                "display_name": c.display_name,
                "configured": c.provider_name in self._connectors,
                "scopes": c.scopes,
            }
            for c in self._known
        ]
