"""Shared runtime accessor for the active KnowledgeBase instance."""
from __future__ import annotations

import threading

from kb.service import KnowledgeBase

_KB_INSTANCE: KnowledgeBase | None = None
_KB_LOCK = threading.Lock()


def set_kb_instance(kb: KnowledgeBase | None) -> None:
    """Register or clear the process-wide knowledge base."""
    global _KB_INSTANCE
    with _KB_LOCK:
        _KB_INSTANCE = kb


def get_kb_instance() -> KnowledgeBase | None:
    """Return the current knowledge base when initialized."""
    return _KB_INSTANCE


def require_kb_instance() -> KnowledgeBase:
    """Return the active knowledge base, lazily building one from config.

    Uses double-checked locking to avoid creating duplicate instances.
    """
    global _KB_INSTANCE
    if _KB_INSTANCE is not None:
        return _KB_INSTANCE

    with _KB_LOCK:
        if _KB_INSTANCE is not None:
            # Another thread beat us here.
            return _KB_INSTANCE
        _KB_INSTANCE = KnowledgeBase.from_config()
        return _KB_INSTANCE
