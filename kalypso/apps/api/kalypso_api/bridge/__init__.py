"""Bridge (ledger provider) API access."""

from kalypso_api.bridge.client import BridgeClient, BridgeSettings
from kalypso_api.bridge.retry import RetryPolicy

__all__ = ["BridgeClient", "BridgeSettings", "RetryPolicy"]
