"""FastAPI web application for the Ubuntu autoinstall ISO builder.

This module provides the HTTP API over the build orchestrator.

All business logic is delegated to core modules in ubuntu_autoinstaller/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
