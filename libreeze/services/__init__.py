"""Libreeze - Services Package

Clients for the hosted backend:
- HTTP transport (connection pool, API key)
- Auth (password sign-in, session, auth-state events)
- Tables, object storage and remote functions
"""

from libreeze.services.backend import BackendClient

__all__ = ["BackendClient"]
