"""Shared FastAPI dependencies."""

from fastapi import Request

from app.services.ledger import Ledger
from app.storage.base import get_store


def get_ledger(request: Request) -> Ledger:
    """Dependency: Ledger bound to the app-wide store (created lazily if startup did not run)."""
    store = getattr(request.app.state, "store", None)
    if store is None:
        store = request.app.state.store = get_store()
    return Ledger(store)
