"""
Web module - Flask JSON API over the device trust service.
"""

from trustgate.web.app import create_app

__all__ = ["create_app"]
