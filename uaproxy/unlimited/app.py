#!/usr/bin/env python3
"""Process-wide proxy instance exposed as an ASGI application."""
from .proxy import UnlimitedProxy

# Global singleton instance; the cached upstream session lives on it
proxy_service = UnlimitedProxy()
app = proxy_service.app


if __name__ == '__main__':
    proxy_service.run_app()
