"""
API routers.

Routers:
- billing: webhooks, subscription, usage, quota, checkout and portal
- generation: quota-guarded AI operations
"""

from cutglue.routers.billing import router as billing_router
from cutglue.routers.generation import router as generation_router

__all__ = ["billing_router", "generation_router"]
