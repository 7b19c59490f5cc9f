"""Libreeze - library management client

Modules:
- Configuration (config.py)
- Backend clients: auth, tables, storage, functions (services/)
- Session state (session.py)
- Data access service (library.py)
- Navigation guards (guards.py)
- View state for each screen (views.py)
- Web service (api.py) and CLI (main.py)
"""

__version__ = "0.1.0"
