import asyncio

import pytest
from httpx import AsyncClient


SLICES_PAYLOAD = {
    "datasource_id": "warehouse",
    "exposure_query_id": "exp_1",
    "exposure_sql": "SELECT user_id, timestamp, country FROM events",
    "dimensions": ["country"],
    "end_date": "2025-01-31T00:00:00",
}


async def wait_for_status(client, analysis_id, headers, statuses=("success", "error", "canceled")):
    for _ in range(200):
        response = await client.get(f"/analyses/{analysis_id}", headers=headers)
        if response.json()["status"] in statuses:
            return response.json()
        await asyncio.sleep(0.01)
    raise AssertionError(f"Analysis {analysis_id} did not finish")


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_dimension_slices_wait(client: AsyncClient, org_headers):
    """Waiting returns the settled analysis"""
    response = await client.post(
        "/analyses/dimension-slices?wait=true", json=SLICES_PAYLOAD, headers=org_headers
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "success"
    assert data["target_key"] == "warehouse:exp_1"
    assert data["result"]["total_units"] == 4
    assert data["result"]["dimensions"][0]["slices"][0] == {
        "name": "US",
        "units": 3,
        "percent": 75.0,
    }


@pytest.mark.asyncio
async def test_dimension_slices_background(client: AsyncClient, org_headers):
    """Without wait the analysis runs in the background"""
    response = await client.post(
        "/analyses/dimension-slices", json=SLICES_PAYLOAD, headers=org_headers
    )
    assert response.status_code == 200
    started = response.json()
    assert started["status"] in ("running", "success")

    finished = await wait_for_status(client, started["id"], org_headers)
    assert finished["status"] == "success"

    # Query records can be looked up in any order
    ids = ",".join(["missing"] + finished["query_ids"])
    queries = await client.get(f"/queries?ids={ids}", headers=org_headers)
    assert queries.status_code == 200
    records = queries.json()["queries"]
    assert records[0] is None
    assert records[1]["status"] == "succeeded"
    assert records[1]["name"] == "dimension_slices"


@pytest.mark.asyncio
async def test_metric_aggregates(client: AsyncClient, org_headers):
    payload = {
        "datasource_id": "warehouse",
        "metrics": [{"name": "value", "sql": "SELECT timestamp, value FROM events"}],
        "end_date": "2025-01-31T00:00:00",
    }
    response = await client.post(
        "/analyses/metric-aggregates?wait=true", json=payload, headers=org_headers
    )
    assert response.status_code == 200
    data = response.json()
    assert data["kind"] == "metric_aggregate"
    assert data["result"]["metrics"] == [
        {"name": "value", "count": 4, "total": 100.0, "mean": 25.0}
    ]


@pytest.mark.asyncio
async def test_failed_query_reported(client: AsyncClient, org_headers):
    payload = {**SLICES_PAYLOAD, "exposure_sql": "SELECT * FROM missing_table"}
    response = await client.post(
        "/analyses/dimension-slices?wait=true", json=payload, headers=org_headers
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "error"
    assert "missing_table" in data["error"]


@pytest.mark.asyncio
async def test_conflict(client: AsyncClient, org_headers, store):
    """A second analysis for a target in flight is rejected with 409"""
    existing = await store.create_analysis_if_absent(
        organization="org_1",
        target_key="warehouse:exp_1",
        kind="dimension_slices",
        params={"datasource_id": "warehouse"},
    )

    response = await client.post(
        "/analyses/dimension-slices", json=SLICES_PAYLOAD, headers=org_headers
    )
    assert response.status_code == 409
    assert response.json()["detail"]["existing_id"] == existing.id


@pytest.mark.asyncio
async def test_invalid_dimension(client: AsyncClient, org_headers):
    payload = {**SLICES_PAYLOAD, "dimensions": ["country; DROP TABLE events"]}
    response = await client.post(
        "/analyses/dimension-slices", json=payload, headers=org_headers
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_datasource(client: AsyncClient, org_headers):
    payload = {**SLICES_PAYLOAD, "datasource_id": "nope"}
    response = await client.post(
        "/analyses/dimension-slices", json=payload, headers=org_headers
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_organization_header_required(client: AsyncClient):
    response = await client.post("/analyses/dimension-slices", json=SLICES_PAYLOAD)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_get_analysis_other_organization(client: AsyncClient, org_headers):
    response = await client.post(
        "/analyses/dimension-slices?wait=true", json=SLICES_PAYLOAD, headers=org_headers
    )
    analysis_id = response.json()["id"]

    response = await client.get(
        f"/analyses/{analysis_id}", headers={"X-Organization": "org_2"}
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_latest(client: AsyncClient, org_headers):
    params = {"kind": "dimension_slices", "target_key": "warehouse:exp_1"}

    missing = await client.get("/analyses/latest", params=params, headers=org_headers)
    assert missing.status_code == 404

    created = await client.post(
        "/analyses/dimension-slices?wait=true", json=SLICES_PAYLOAD, headers=org_headers
    )
    latest = await client.get("/analyses/latest", params=params, headers=org_headers)
    assert latest.status_code == 200
    assert latest.json()["id"] == created.json()["id"]


@pytest.mark.asyncio
async def test_cancel_queued_analysis(client: AsyncClient, org_headers, store):
    """Canceling an analysis that has not started marks it canceled"""
    queued = await store.create_analysis_if_absent(
        organization="org_1",
        target_key="warehouse:exp_1",
        kind="dimension_slices",
        params={"datasource_id": "warehouse"},
    )

    response = await client.post(f"/analyses/{queued.id}/cancel", headers=org_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "canceled"

    # Canceling again changes nothing
    again = await client.post(f"/analyses/{queued.id}/cancel", headers=org_headers)
    assert again.status_code == 200
    assert again.json()["finished_at"] == response.json()["finished_at"]


@pytest.mark.asyncio
async def test_cancel_finished_analysis(client: AsyncClient, org_headers):
    created = await client.post(
        "/analyses/dimension-slices?wait=true", json=SLICES_PAYLOAD, headers=org_headers
    )
    analysis_id = created.json()["id"]

    response = await client.post(f"/analyses/{analysis_id}/cancel", headers=org_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "success"


@pytest.mark.asyncio
async def test_cancel_unknown_analysis(client: AsyncClient, org_headers):
    response = await client.post("/analyses/missing/cancel", headers=org_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_test_query(client: AsyncClient, org_headers):
    payload = {
        "datasource_id": "warehouse",
        "query": "SELECT * FROM events WHERE country = '{{ country }}'",
        "template_variables": {"country": "FR"},
    }
    response = await client.post("/queries/test", json=payload, headers=org_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["error"] is None
    assert [row["user_id"] for row in data["results"]] == ["u3"]


@pytest.mark.asyncio
async def test_test_query_limit(client: AsyncClient, org_headers):
    payload = {"datasource_id": "warehouse", "query": "SELECT * FROM events"}
    response = await client.post("/queries/test", json=payload, headers=org_headers)
    assert response.status_code == 200
    assert len(response.json()["results"]) == 5
    assert response.json()["sql"].endswith("LIMIT 5")


@pytest.mark.asyncio
async def test_test_query_error(client: AsyncClient, org_headers):
    payload = {"datasource_id": "warehouse", "query": "SELECT * FROM missing_table"}
    response = await client.post("/queries/test", json=payload, headers=org_headers)
    assert response.status_code == 200
    assert response.json()["results"] == []
    assert "missing_table" in response.json()["error"]


@pytest.mark.asyncio
async def test_cancel_with_removed_datasource(client: AsyncClient, org_headers, store):
    """An analysis whose datasource was removed can still be canceled"""
    analysis = await store.create_analysis_if_absent(
        organization="org_1",
        target_key="removed:exp_1",
        kind="dimension_slices",
        params={"datasource_id": "removed"},
    )
    query = await store.create_query(
        organization="org_1",
        analysis_id=analysis.id,
        name="dimension_slices",
        position=0,
        sql="SELECT 1",
    )
    await store.update_analysis(analysis.id, status="running", query_ids=[query.id])

    response = await client.post(f"/analyses/{analysis.id}/cancel", headers=org_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "canceled"

    queries = await client.get(f"/queries?ids={query.id}", headers=org_headers)
    assert queries.json()["queries"][0]["status"] == "canceled"
