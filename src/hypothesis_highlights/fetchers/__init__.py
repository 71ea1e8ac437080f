"""HTTP fetchers for retrieving highlights from remote services."""
from .hypothesis import AnnotationPage, HypothesisClient, PageToken

__all__ = ["AnnotationPage", "HypothesisClient", "PageToken"]
