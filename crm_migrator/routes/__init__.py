# crm_migrator/routes/__init__.py
"""
Application routes package
"""

from .migrations import register_migration_routes


def init_routes(app):
    """Initialize all application routes"""
    register_migration_routes(app)
