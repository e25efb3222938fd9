"""
Top-level package for the Salon Ledger API.

All functionality lives in submodules under ``app``; the ASGI
application is ``salon_ledger_api.app.main:app``.
"""

__all__ = []
