"""
ArcVault

Self-hosted secret vault: named stores holding opaque, optionally expiring
records, served through a JSON API.

CORE CONTRACTS:
- Payloads are opaque: the vault never inspects a record buffer
- Expiry: expires_at >= created_at, absence means "never expires"
- Cascade: deleting a store removes all of its records atomically
- Pruning: expired records are deleted by the scheduler unless held
"""

__version__ = "0.9.0"
