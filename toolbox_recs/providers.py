# toolbox_recs/providers.py
"""
Collaborator contracts: the embedding provider and the capability predicate.

Vectors are produced elsewhere and pushed in through the admin catalog
endpoint; this module only stores and hands them out. Access control is
likewise somebody else's policy: the engine just asks has_capability().
"""
from typing import Callable, List, Optional, Protocol

from .models import CatalogItem
from .store import get_session

CapabilityPredicate = Callable[[str, str], bool]


class EmbeddingProvider(Protocol):
    def item_vector(self, item_id: str) -> Optional[List[float]]: ...


class CatalogEmbeddingProvider:
    """Serves the provider vectors stored alongside catalog rows."""

    def item_vector(self, item_id: str) -> Optional[List[float]]:
        with get_session() as s:
            row = s.get(CatalogItem, item_id)
            return list(row.embedding) if row and row.embedding else None


def deny_gated(subject_token: str, item_id: str) -> bool:
    # No access-control collaborator wired: gated items stay hidden
    return False


def allow_all(subject_token: str, item_id: str) -> bool:
    return True
