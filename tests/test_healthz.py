from datetime import timedelta

from portal.v1.infra.jobs.store import JobStore


async def test_health_check_success(async_client):
    """Test health check endpoint returns correct format."""
    response = await async_client.get("/v1/healthz")

    assert response.status_code == 200

    data = response.json()
    assert data["ok"] is True

    health_data = data["data"]
    assert health_data["ok"] is True
    assert health_data["version"] == "1.0.0"
    assert health_data["environment"] == "development"
    assert health_data["database"]["connected"] is True
    assert health_data["database"]["response_time_ms"] >= 0


async def test_health_check_response_structure(async_client):
    """Test health check response envelope structure."""
    response = await async_client.get("/v1/healthz")

    data = response.json()

    # Check response envelope structure
    for key in ["ok", "data", "message", "request_id", "timestamp"]:
        assert key in data

    # Check that request ID is present in headers
    assert "X-Request-ID" in response.headers


async def test_health_check_reports_queue(async_client, test_settings, session_factory):
    """Queue depth and expired leases show up in the health payload."""
    store = JobStore(test_settings)
    async with session_factory() as session:
        for install_id in (1, 2, 3):
            await store.enqueue(session, install_id, "provision")
        await session.commit()
    async with session_factory() as session:
        # A lease that already ran out: its worker is gone
        await store.claim_next(session, "worker-gone", timedelta(seconds=-1))

    response = await async_client.get("/v1/healthz")

    queue = response.json()["data"]["queue"]
    assert queue["queue_depth"] == 3
    assert queue["pending_jobs"] == 2
    assert queue["processing_jobs"] == 1
    assert queue["failed_jobs"] == 0
    assert queue["expired_leases"] == 1


async def test_empty_queue(async_client):
    response = await async_client.get("/v1/healthz")

    queue = response.json()["data"]["queue"]
    assert queue == {
        "queue_depth": 0,
        "pending_jobs": 0,
        "processing_jobs": 0,
        "failed_jobs": 0,
        "expired_leases": 0,
    }
