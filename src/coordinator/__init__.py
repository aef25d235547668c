"""Coordinator façade and its Lambda request/response entry point."""

from .service import Coordinator

__all__ = ["Coordinator"]
