# tests/test_index.py
from datetime import datetime, timedelta

import numpy as np
import pytest

from toolbox_recs.errors import NotFoundError
from toolbox_recs.index import IndexStore, build_index, freshness_score
from toolbox_recs.models import CatalogItem


def item(item_id, vec, category="ai-tools", popularity=0, published_at=None):
    return CatalogItem(id=item_id, category=category, embedding=vec, popularity=popularity, published_at=published_at)


def test_ties_break_by_item_id():
    idx = build_index([item("b", [1, 0]), item("a", [2, 0]), item("c", [0, 1])])
    rows = idx.search([1, 0], 3)
    assert [idx.item_ids[r] for r, _ in rows] == ["a", "b", "c"]
    assert rows[0][1] == pytest.approx(1.0)


def test_same_catalog_same_ref():
    items = [item("a", [1, 0]), item("b", [0, 1])]
    assert build_index(items).ref == build_index(list(reversed(items))).ref
    assert build_index(items).ref != build_index(items + [item("c", [1, 1])]).ref


def test_index_arrays_are_read_only():
    idx = build_index([item("a", [1, 0])])
    with pytest.raises(ValueError):
        idx.matrix[0, 0] = 5.0


def test_mixed_dimensions_are_refused():
    with pytest.raises(ValueError):
        build_index([item("a", [1, 0]), item("b", [1, 0, 0])])


def test_query_dimension_must_match():
    idx = build_index([item("a", [1, 0])])
    with pytest.raises(ValueError):
        idx.search([1, 0, 0], 1)
    with pytest.raises(ValueError):
        idx.search([0, 0], 1)


def test_popularity_and_freshness_features():
    now = datetime(2026, 1, 31)
    idx = build_index(
        [item("a", [1, 0], popularity=100, published_at=now), item("b", [0, 1], popularity=0, published_at=now - timedelta(days=30))],
        now=now,
    )
    assert idx.popularity.tolist() == [1.0, 0.0]
    assert idx.freshness[0] == pytest.approx(1.0)
    assert idx.freshness[1] == pytest.approx(0.5)
    assert [idx.item_ids[r] for r in idx.by_popularity()] == ["a", "b"]
    assert freshness_score(None, now) == 0.0


def test_store_keeps_versions_by_ref():
    store = IndexStore()
    a = build_index([item("a", [1, 0])])
    b = build_index([item("a", [1, 0]), item("b", [0, 1])])
    store.put(a)
    store.put(b)
    assert store.get(a.ref) is a
    assert store.latest() is b
    with pytest.raises(NotFoundError):
        store.get("idx-missing")
    assert isinstance(b.matrix, np.ndarray)


def test_retain_evicts_unreferenced_indexes_but_never_the_latest():
    store = IndexStore()
    a = build_index([item("a", [1, 0])])
    b = build_index([item("b", [0, 1])])
    c = build_index([item("c", [1, 1])])
    for idx in (a, b, c):
        store.put(idx)

    assert store.retain({a.ref}) == [b.ref]
    assert len(store) == 2
    assert store.get(a.ref) is a and store.latest() is c
    with pytest.raises(NotFoundError):
        store.get(b.ref)


def test_catalog_refresh_drops_the_superseded_index(services, seed_catalog):
    from conftest import BASE_CATALOG

    old = seed_catalog(services)
    new = seed_catalog(services, BASE_CATALOG + [("n1-new", "design", [0.0, 0.0, 0.0, 1.0], 1)])

    assert len(services.indexes) == 1
    assert services.indexes.get(new.ref) is new
    with pytest.raises(NotFoundError):
        services.indexes.get(old.ref)


def test_index_of_a_running_experiment_variant_stays_loaded(services, seed_catalog):
    from conftest import BASE_CATALOG
    from toolbox_recs.ranker import default_weights

    old = seed_catalog(services)
    draft = services.registry.create_draft(
        "default", default_weights(), old.ref, [], services.registry.active_version_id("default"),
    )
    services.experiments.propose(draft)

    new = seed_catalog(services, BASE_CATALOG + [("n1-new", "design", [0.0, 0.0, 0.0, 1.0], 1)])

    assert services.registry.snapshot("default").active.index_ref == new.ref
    assert services.indexes.get(old.ref) is old
