"""
HTTP API Service Module
"""

from .api import SOSApiService, create_app

__all__ = [
    'SOSApiService',
    'create_app'
]
