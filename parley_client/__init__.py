"""
Terminal client for the chat relay.
"""

from .client import Client

__all__ = ['Client']
