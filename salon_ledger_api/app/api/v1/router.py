"""
Top-level router for version 1 of the API.

The ledger exposes a single action-dispatching endpoint; this module
exists so that further endpoints can be added next to it without
touching ``main``.
"""

from fastapi import APIRouter

from .endpoints import exec as exec_endpoint

router = APIRouter()

router.include_router(exec_endpoint.router, tags=["ledger"])
