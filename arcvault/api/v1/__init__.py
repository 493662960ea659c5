"""
ArcVault API v1 Routers

All resource endpoints live under /api/v1/*.
"""

from arcvault.api.v1 import admin, health, records, stores

__all__ = ["admin", "health", "records", "stores"]
