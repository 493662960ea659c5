"""
ArcVault - Storage Layer

Persistence gateway abstraction and its backends:
- Postgres as the durable system of record (default)
- In-memory dictionaries for development and tests
"""

from arcvault.storage.gateway import (
    GatewayFactory,
    GatewaySession,
    PersistenceGateway,
    create_gateway_from_config
)

__all__ = [
    'GatewayFactory',
    'GatewaySession',
    'PersistenceGateway',
    'create_gateway_from_config'
]
