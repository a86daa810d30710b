# src/quantdsl_mql5/utils/errors.py

from __future__ import annotations

from typing import Optional


class GenerationError(Exception):
    """
    Base class for everything that stops a compile.

    A compile either returns complete source text or raises; it never
    returns partial output.
    """


class GraphDocumentError(GenerationError):
    """
    The strategy document itself is invalid: unknown node kind, a field
    with the wrong type or value, or a reference to a node that does not
    exist.
    """

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        if node_id is not None:
            message = f"node '{node_id}': {message}"
        super().__init__(message)
