"""Identifier generation for collections."""

from __future__ import annotations

from uuid import uuid4


def new_collection_id() -> str:
    """Generate a new random collection identifier."""
    return uuid4().hex
