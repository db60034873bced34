# tests/conftest.py
import pathlib, pytest
from dotenv import load_dotenv

# before anything imports toolbox_recs.config
load_dotenv(pathlib.Path(__file__).parent / ".env.test", override=True)

import numpy as np  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    from toolbox_recs.store import reset_db
    reset_db()


def catalog_item(item_id, category, embedding, popularity=0, gated=False, published_at=None):
    from toolbox_recs.schema import CatalogItemIn
    return CatalogItemIn(
        id=item_id, title=item_id, category=category, gated=gated,
        popularity=popularity, published_at=published_at, embedding=embedding,
    )


# profile [1, 0, 0, 0]: d1-design outranks x-ai until x-ai gets positive feedback
BASE_CATALOG = [
    ("d1-design", "design", [0.8, 0.6, 0.0, 0.0], 10),
    ("p1-prod", "productivity", [0.0, 0.0, 1.0, 0.0], 100),
    ("x-ai", "ai-tools", [0.6, 0.8, 0.0, 0.0], 0),
]


@pytest.fixture()
def make_services(tmp_path):
    from toolbox_recs.services import Services, set_services

    def _make(**overrides):
        kwargs = dict(
            rng=np.random.default_rng(7),
            sensitivity_level="low",
            canary_stages=(100,),
            canary_dwell_seconds=0,
            canary_check_interval=0.01,
            auto_experiment=False,
            dead_letter_path=str(tmp_path / "dead_letter.jsonl"),
        )
        kwargs.update(overrides)
        svc = Services(**kwargs)
        set_services(svc)
        return svc

    yield _make
    set_services(None)


@pytest.fixture()
def services(make_services):
    return make_services()


@pytest.fixture()
def seed_catalog():
    from toolbox_recs.catalog import upsert_items

    def _seed(services, rows=BASE_CATALOG, surface="default"):
        upsert_items([catalog_item(i, c, e, p) for i, c, e, p in rows])
        return services.rebuild_index(surface)

    return _seed


@pytest.fixture()
def client(services):
    from fastapi.testclient import TestClient
    from toolbox_recs.main import app
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def admin_headers():
    return {"X-API-Key": "test-key"}
