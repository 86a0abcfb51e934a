"""
API routers
"""

from . import fleet, virtual_devices

__all__ = ["fleet", "virtual_devices"]
