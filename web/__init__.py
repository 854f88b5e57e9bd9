"""
Web interface package for the database backup service.

This package contains the FastAPI application and its backup routes.
"""

from web.app import app

__all__ = ['app']
