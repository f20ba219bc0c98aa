"""
EcoTicker Models, re-exported so callers can `from ecoticker.models import X`.
"""

# Core topics and related entities
from ecoticker.models.topics import (
    Topic, Article, ScoreHistory, TopicKeyword,
    CATEGORIES, URGENCIES, SOURCE_TYPES,
)

# Ops
from ecoticker.models.ops import AuditLog

__all__ = [
    # Topics
    "Topic", "Article", "ScoreHistory", "TopicKeyword",
    "CATEGORIES", "URGENCIES", "SOURCE_TYPES",
    # Ops
    "AuditLog",
]
