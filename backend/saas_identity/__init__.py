"""
saas_identity - multi-tenant identity backend synced from Clerk.

Two ASGI applications live in this package:
- saas_identity.gateway.app: edge gateway that verifies Clerk JWTs
- saas_identity.main: backend that trusts gateway identity headers
"""

__version__ = "1.0.0"
