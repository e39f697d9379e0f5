"""HTTP routers

Routers are organized by feature domain.
"""

from . import accounts_router, auth_router

__all__ = [
    "accounts_router",
    "auth_router",
]
