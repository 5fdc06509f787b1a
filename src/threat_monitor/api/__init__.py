"""
Threat Monitor API Package

This package contains the REST API components for operating the threat monitor.
"""

from .server import app

__all__ = ['app']
