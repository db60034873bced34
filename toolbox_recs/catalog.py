# toolbox_recs/catalog.py
"""Catalog rows in the database: upsert from the admin endpoint, load for index builds."""
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlmodel import select

from .logging_setup import get_logger
from .models import CatalogItem
from .schema import CatalogItemIn
from .store import get_session

logger = get_logger("toolbox_recs.catalog")


def _naive_utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None or ts.tzinfo is None:
        return ts
    return ts.astimezone(timezone.utc).replace(tzinfo=None)


def upsert_items(items: Iterable[CatalogItemIn]) -> int:
    n = 0
    with get_session() as s:
        for it in items:
            row = s.get(CatalogItem, it.id)
            if row is None:
                row = CatalogItem(id=it.id, category=it.category)
            row.title = it.title
            row.category = it.category.lower()
            row.gated = it.gated
            row.popularity = it.popularity
            row.published_at = _naive_utc(it.published_at)
            row.embedding = [float(x) for x in it.embedding]
            s.add(row)
            n += 1
        s.commit()
    logger.info("CATALOG_UPSERTED", extra={"items": n})
    return n


def load_items() -> List[CatalogItem]:
    with get_session() as s:
        rows = s.exec(select(CatalogItem).order_by(CatalogItem.id)).all()
        for r in rows:
            s.expunge(r)
        return list(rows)
