"""
End-to-end tests over the HTTP API with in-memory collaborators.
"""
import json

PM_QUERY = {"query": "What is PM Scholarship?", "sessionId": "s1"}


def test_query_answers_with_eligibility_benefits_and_steps(client):
    response = client.post("/api/v1/query", json=PM_QUERY)

    assert response.status_code == 200
    body = response.json()
    assert "Eligibility" in body["response"]
    assert "Benefits" in body["response"]
    assert "How to apply" in body["response"]
    assert body["sources"][0]["schemeId"] == "pm-scholarship"
    assert body["sources"][0]["officialLink"] == "https://scholarships.gov.in"
    assert body["clarificationNeeded"] is False
    assert body["sessionId"] == "s1"
    assert response.headers["X-Query-Outcome"] == "generated"
    assert "X-Trace-ID" in response.headers


def test_second_identical_query_hits_cache(client, services):
    client.post("/api/v1/query", json=PM_QUERY)
    response = client.post("/api/v1/query", json={**PM_QUERY, "sessionId": "s2"})

    assert response.headers["X-Query-Outcome"] == "cache_hit"
    assert response.json()["sessionId"] == "s2"
    assert len(services.generator.prompts) == 1


def test_new_session_id_is_issued(client):
    response = client.post("/api/v1/query", json={"query": "PM internship kaise apply kare"})

    assert response.status_code == 200
    assert response.json()["sessionId"]


def test_hundred_and_first_query_in_an_hour_is_rejected(client):
    for _ in range(100):
        assert client.post("/api/v1/query", json=PM_QUERY).status_code == 200

    response = client.post("/api/v1/query", json=PM_QUERY)

    assert response.status_code == 429
    assert response.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(response.headers["Retry-After"]) >= 1


def test_low_bandwidth_payload_is_much_smaller(client):
    full = client.post("/api/v1/query", json={"query": "What is PM Scholarship?", "sessionId": "bw-full"})
    lite = client.post(
        "/api/v1/query",
        json={"query": "What is PM Scholarship?", "sessionId": "bw-lite", "lowBandwidth": True},
    )

    assert len(full.json()["response"]) > 500
    body = lite.json()
    assert "sources" not in body
    assert "relatedSchemes" not in body
    assert len(body["response"]) <= 500
    assert len(lite.content) <= 0.4 * len(full.content)


def test_blank_query_returns_invalid_query_envelope(client):
    response = client.post("/api/v1/query", json={"query": "   "})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_QUERY"


def test_malformed_body_returns_envelope(client):
    response = client.post("/api/v1/query", json={"sessionId": "s1"})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "INVALID_REQUEST"
    assert "query" in body["message"]


def test_unknown_scheme_returns_404_envelope(client):
    response = client.get("/api/v1/schemes/does-not-exist")

    assert response.status_code == 404
    assert response.json() == {
        "code": "SCHEME_NOT_FOUND",
        "message": "We could not find that scheme. Try searching by its name instead.",
    }


def test_scheme_detail_uses_camel_case(client):
    response = client.get("/api/v1/schemes/pm-scholarship")

    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "PM Scholarship"
    assert body["eligibilityCriteria"]
    assert body["applicationSteps"][0]["order"] == 1


def test_scheme_search(client):
    response = client.get("/api/v1/schemes/search", params={"q": "chhatravritti", "category": "scholarship"})

    assert response.status_code == 200
    body = response.json()
    assert body["totalCount"] >= 1
    assert all(result["category"] == "scholarship" for result in body["results"])


def test_scheme_search_without_keywords_is_rejected(client):
    response = client.get("/api/v1/schemes/search", params={"q": "what is the"})

    assert response.status_code == 400


def test_scheme_change_invalidates_cached_answers(client, services):
    client.post("/api/v1/query", json=PM_QUERY)
    scheme = client.get("/api/v1/schemes/pm-scholarship").json()
    scheme["benefits"] = ["Rs 4,000 per month"]

    updated = client.put("/admin/schemes/pm-scholarship", json=scheme)
    assert updated.json()["status"] == "updated"

    again = client.post("/api/v1/query", json={**PM_QUERY, "sessionId": "s3"})
    assert again.headers["X-Query-Outcome"] == "generated"
    assert "Rs 4,000 per month" in again.json()["response"]
    assert client.get("/api/v1/schemes/pm-scholarship").json()["benefits"] == ["Rs 4,000 per month"]


def test_admin_upsert_rejects_mismatched_id(client):
    scheme = client.get("/api/v1/schemes/pm-scholarship").json()

    response = client.put("/admin/schemes/other-id", json=scheme)

    assert response.status_code == 400


def test_find_opportunities(client):
    response = client.post(
        "/api/v1/opportunities/find",
        json={"userProfile": {"age": 22, "location": {"state": "Bihar"}}, "filters": {"limit": 10}},
    )

    assert response.status_code == 200
    body = response.json()
    ids = [o["schemeId"] for o in body["opportunities"]]
    assert "up-post-matric" not in ids
    assert "pm-scholarship" in ids
    assert set(body["relevanceScores"]) == set(ids)


def test_feedback_is_accepted(client, services):
    response = client.post("/api/v1/feedback", json={"sessionId": "s1", "rating": 5, "comment": "helpful"})

    assert response.status_code == 202
    assert response.json() == {"status": "recorded"}


def test_feedback_rating_out_of_range(client):
    response = client.post("/api/v1/feedback", json={"sessionId": "s1", "rating": 6})

    assert response.status_code == 400


def test_health_endpoints_are_not_rate_limited(client):
    for _ in range(3):
        assert client.get("/health/").status_code == 200

    store = client.get("/health/store").json()
    assert store["backend"] == "memory"
    assert store["shared"] is False


def test_metrics_endpoint(client):
    client.post("/api/v1/query", json=PM_QUERY)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "query_outcomes_total" in response.text


def test_trace_id_is_propagated(client):
    response = client.get("/health/", headers={"X-Trace-ID": "trace-abc"})

    assert response.headers["X-Trace-ID"] == "trace-abc"
    assert json.loads(response.content)["status"] == "ok"
