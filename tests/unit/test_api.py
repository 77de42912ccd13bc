"""Unit tests for the read-only HTTP surface."""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import update

from app.api.dependencies import get_db, get_redis
from app.main import app
from app.models import Wager
from app.models.base import utcnow
from app.services.orchestrator import INTERVAL, JobOrchestrator, RecurringJob
from app.services.placement import PlacementService

from tests.conftest import BrokenRedis, selection_request


@pytest.fixture
async def client(session_factory):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()


async def place_pair(session_factory, account_id):
    async with session_factory() as session:
        service = PlacementService(session)
        single = await service.place_single(account_id, Decimal("5"), selection_request())
        combo = await service.place_combination(
            account_id,
            Decimal("2"),
            [selection_request(event_id="e1"), selection_request(event_id="e2", odds="1.50")],
        )
        return single.id, combo.id


class TestWagerRoutes:
    async def test_list_filters_by_account(self, client, session_factory, make_account):
        mine = await make_account(ref="mine")
        other = await make_account(ref="other")
        await place_pair(session_factory, mine)
        await place_pair(session_factory, other)

        response = await client.get("/api/wagers", params={"account_id": mine})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert {item["account_id"] for item in body["items"]} == {mine}

    async def test_detail_includes_legs(self, client, session_factory, make_account):
        _, combo_id = await place_pair(session_factory, await make_account())

        response = await client.get(f"/api/wagers/{combo_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "combination"
        assert [leg["event_id"] for leg in body["legs"]] == ["e1", "e2"]
        assert body["status"] == "pending"

    async def test_unknown_wager(self, client):
        response = await client.get("/api/wagers/424242")
        assert response.status_code == 404

    async def test_bad_status_filter(self, client):
        response = await client.get("/api/wagers", params={"status": "paid"})
        assert response.status_code == 422


class TestJobRoutes:
    async def test_lists_descriptors_and_runs(self, client, session_factory, settlement_config):
        job = RecurringJob("retry-sweep", "app.tasks.settlement.retry_sweep", INTERVAL, "300")
        orchestrator = JobOrchestrator(session_factory, jobs=[job], config=settlement_config)
        await orchestrator.reconcile_on_startup()

        async def work():
            return {"resettled": 1}

        await orchestrator.run_job("retry-sweep", work)

        response = await client.get("/api/jobs")

        assert response.status_code == 200
        body = response.json()
        assert [d["name"] for d in body["descriptors"]] == ["retry-sweep"]
        assert body["descriptors"][0]["state"] == "scheduled"
        assert body["recent_runs"][0]["status"] == "success"
        assert body["recent_runs"][0]["records_processed"] == 1


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestReadiness:
    async def test_warns_until_sweep_scheduled(
        self, client, session_factory, settlement_config, fake_redis
    ):
        app.dependency_overrides[get_redis] = lambda: fake_redis

        body = (await client.get("/ready")).json()
        assert body["ready"] is True
        assert body["checks"]["db"]["status"] == "ok"
        assert body["checks"]["redis"]["status"] == "ok"
        assert body["checks"]["settlement_sweep"]["status"] == "warning"

        await JobOrchestrator(session_factory, config=settlement_config).reconcile_on_startup()
        body = (await client.get("/ready")).json()
        assert body["checks"]["settlement_sweep"] == {"status": "ok", "message": "scheduled"}

    async def test_overdue_backlog_is_reported(
        self, client, session_factory, make_account, fake_redis
    ):
        app.dependency_overrides[get_redis] = lambda: fake_redis
        single_id, _ = await place_pair(session_factory, await make_account())
        assert (await client.get("/ready")).json()["checks"]["backlog"]["status"] == "ok"

        async with session_factory() as session:
            await session.execute(
                update(Wager)
                .where(Wager.id == single_id)
                .values(estimated_settlement_time=utcnow() - timedelta(hours=2))
            )
            await session.commit()

        backlog = (await client.get("/ready")).json()["checks"]["backlog"]
        assert backlog == {"status": "warning", "message": "1 pending wager(s) overdue"}

    async def test_redis_down_is_not_ready(self, client):
        app.dependency_overrides[get_redis] = lambda: BrokenRedis()

        body = (await client.get("/ready")).json()

        assert body["ready"] is False
        assert body["checks"]["redis"] == {"status": "error", "message": "redis down"}
