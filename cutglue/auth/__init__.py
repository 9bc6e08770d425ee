"""
Service-to-service authentication.

The web application calls this service with a shared bearer key and names
the end user in X-User-ID.
"""

from cutglue.auth.dependencies import get_current_user_id, require_service_key

__all__ = ["require_service_key", "get_current_user_id"]
