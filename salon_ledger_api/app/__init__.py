"""
Application package for the ledger server.

``core`` holds configuration, persistence, time normalisation and the
authentication gate; ``services`` the identity directory and the order
ledger; ``api`` the HTTP endpoint that dispatches actions to them.
"""

from .main import app  # noqa: F401
