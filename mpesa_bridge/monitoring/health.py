"""
Health check for load balancer / uptime probes.

Reports liveness together with the Daraja environment the process talks to.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from mpesa_bridge.config import Settings, get_settings


class HealthCheck:
    """Health check service."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Simple check that the application is running.
        Does not check Daraja or Shopify.

        Returns:
            Dict[str, Any]: Liveness status
        """
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": self.settings.daraja_env,
        }
