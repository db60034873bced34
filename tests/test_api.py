# tests/test_api.py
from conftest import BASE_CATALOG


def catalog_body():
    return {
        "items": [
            {"id": i, "title": i, "category": c, "embedding": e, "popularity": p}
            for i, c, e, p in BASE_CATALOG
        ]
    }


def feedback(key="k1", token="alice", target="x-ai"):
    return {
        "subjectToken": token,
        "kind": "explicit",
        "targetId": target,
        "rawSignal": {"rating": 5},
        "idempotencyKey": key,
    }


def test_health_lists_surfaces(client, services):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["surfaces"] == {"default": services.registry.active_version_id("default")}
    assert body["queued"] == 0


def test_request_id_is_echoed(client):
    r = client.get("/", headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"
    assert client.get("/").headers["X-Request-ID"]


def test_catalog_upsert_requires_admin_key(client, admin_headers):
    assert client.post("/admin/catalog", json=catalog_body()).status_code == 401
    assert client.post("/admin/catalog", json=catalog_body(), headers={"X-API-Key": "nope"}).status_code == 401

    r = client.post("/admin/catalog", json=catalog_body(), headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["upserted"] == 3
    assert r.json()["indexSize"] == 3


def test_admin_fails_closed_without_configured_key(client, monkeypatch):
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    r = client.post("/admin/catalog", json=catalog_body(), headers={"X-API-Key": "test-key"})
    assert r.status_code == 500


def test_feedback_round_trip_and_duplicate(client, admin_headers):
    client.post("/admin/catalog", json=catalog_body(), headers=admin_headers)

    first = client.post("/feedback", json=feedback())
    second = client.post("/feedback", json=feedback())

    assert first.status_code == 200
    assert first.json()["accepted"] is True
    assert first.json()["strength"] == 1.0
    assert second.json()["duplicate"] is True
    assert second.json()["signalId"] == first.json()["signalId"]
    assert client.get("/health").json()["queued"] == 1


def test_malformed_feedback_is_422(client):
    r = client.post("/feedback", json={"kind": "implicit"})
    assert r.status_code == 422
    assert isinstance(r.json()["detail"], list)

    bad_raw = {**feedback(), "rawSignal": {"rating": 4, "liked": True}}
    r = client.post("/feedback", json=bad_raw)
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"


def test_new_subject_gets_popular_fallback(client, admin_headers, services):
    client.post("/admin/catalog", json=catalog_body(), headers=admin_headers)

    r = client.post("/recommendations", json={"subjectToken": "newcomer", "limit": 3})

    assert r.status_code == 200
    body = r.json()
    assert body["fallback"] is True
    assert [i["itemId"] for i in body["items"]] == ["p1-prod", "d1-design", "x-ai"]
    assert body["items"][0]["reason"] == "popular right now"


def test_known_subject_gets_personalized_items(client, admin_headers, services):
    from toolbox_recs.privacy import pseudonymize

    client.post("/admin/catalog", json=catalog_body(), headers=admin_headers)
    services.profiles.put(pseudonymize("alice"), [1.0, 0.0, 0.0, 0.0])

    body = client.post("/recommendations", json={"subjectToken": "alice", "limit": 2}).json()

    assert body["fallback"] is False
    assert body["modelVersion"] == services.registry.active_version_id("default")
    assert body["items"][0]["itemId"] == "d1-design"


def test_preferences_and_erasure(client, admin_headers, services):
    from toolbox_recs.privacy import pseudonymize

    r = client.put("/profiles/preferences", json={"subjectToken": "alice", "categories": ["design", "ai-tools"]})
    assert r.status_code == 200
    assert r.json()["categories"] == ["ai-tools", "design"]

    assert client.delete("/profiles/alice").status_code == 401
    r = client.delete("/profiles/alice", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["erased"] is True
    assert services.profiles.get(pseudonymize("alice")) is None


def test_experiment_endpoints(client, admin_headers, services):
    from toolbox_recs.ranker import default_weights

    control = services.registry.active_version_id("default")
    cand = services.registry.create_draft("default", default_weights(), "idx", [], control).id
    body = {
        "variants": {"control": control, "candidate": cand},
        "trafficSplit": {"control": 0.5, "candidate": 0.5},
        "successMetrics": ["engagement"],
    }

    assert client.post("/experiments", json=body).status_code == 401
    created = client.post("/experiments", json=body, headers=admin_headers)
    assert created.status_code == 201
    exp_id = created.json()["id"]

    assigned = client.post(f"/experiments/{exp_id}/assign", json={"subjectToken": "alice"}).json()
    again = client.post(f"/experiments/{exp_id}/assign", json={"subjectToken": "alice"}).json()
    assert assigned == again
    assert assigned["modelVersion"] in (control, cand)

    obs = client.post(f"/experiments/{exp_id}/observations", json={"metric": "engagement", "value": 0.7, "subjectToken": "alice"})
    assert obs.status_code == 201
    assert obs.json()["variant"] == assigned["variant"]

    summary = client.get(f"/experiments/{exp_id}").json()["summary"]
    assert summary[assigned["variant"]]["engagement"]["n"] == 1

    decision = client.post(f"/experiments/{exp_id}/evaluate", headers=admin_headers).json()
    assert decision["decision"] == "pending"


def test_experiment_errors_map_to_status_codes(client, admin_headers, services):
    assert client.get("/experiments/missing").status_code == 404
    control = services.registry.active_version_id("default")
    body = {
        "variants": {"control": control, "candidate": control},
        "trafficSplit": {"control": 0.9, "candidate": 0.3},
        "successMetrics": ["engagement"],
    }
    r = client.post("/experiments", json=body, headers=admin_headers)
    assert r.status_code == 422


def test_canary_status_and_cancel(client, admin_headers, services):
    r = client.get("/admin/canary/default", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["activeVersion"] == services.registry.active_version_id("default")
    assert r.json()["canaryVersion"] is None
    assert client.post("/admin/canary/default/cancel", headers=admin_headers).status_code == 404
    assert client.get("/admin/canary/unknown", headers=admin_headers).status_code == 404


def test_manual_pipeline_run(client, admin_headers):
    r = client.post("/admin/pipeline/run", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "aborted"
