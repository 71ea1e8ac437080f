"""Utilities for syncing Hypothes.is highlights into Markdown."""

from .config import Settings
from .models import Annotation, SourceDocument, SyncHistory

__all__ = ["Settings", "Annotation", "SourceDocument", "SyncHistory"]
