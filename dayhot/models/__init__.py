"""
Data models for dayhot.
"""
from dayhot.models.article import NormalizedArticle, SourceType, compute_fingerprint
from dayhot.models.database import Base, Database, DBArticle, DBFeedSource

__all__ = [
    "NormalizedArticle",
    "SourceType",
    "compute_fingerprint",
    "Base",
    "Database",
    "DBArticle",
    "DBFeedSource",
]
