"""
Tracking HTTP routes.
"""

from .collect import create_collect_router, get_client_ip

__all__ = ["create_collect_router", "get_client_ip"]
