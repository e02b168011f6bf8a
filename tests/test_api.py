"""API endpoint tests.

Requests run against the FastAPI app through httpx's ASGI transport, with
the database session dependency bound to the test session.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient

from builders import WEEK

pytestmark = pytest.mark.asyncio


def as_user(user) -> dict[str, str]:
    return {"X-User-ID": str(user.user_id)}


async def open_timesheet(client: AsyncClient, user) -> dict:
    response = await client.post(
        "/api/v1/timesheets", headers=as_user(user), json={"week_start": WEEK.isoformat()}
    )
    assert response.status_code == 201, response.text
    return response.json()


async def log_and_submit(client: AsyncClient, user, project, task) -> str:
    timesheet_id = (await open_timesheet(client, user))["timesheet_id"]
    for offset in range(5):
        response = await client.post(
            f"/api/v1/timesheets/{timesheet_id}/entries",
            headers=as_user(user),
            json={
                "kind": "project_task",
                "project_id": str(project.project_id),
                "task_id": str(task.task_id),
                "work_date": (WEEK + timedelta(days=offset)).isoformat(),
                "hours": "8",
            },
        )
        assert response.status_code == 201, response.text
    response = await client.post(
        f"/api/v1/timesheets/{timesheet_id}/submit", headers=as_user(user)
    )
    assert response.status_code == 200, response.text
    return timesheet_id


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient, org):
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["global_rates"] == 1
        assert "timestamp" in data

    async def test_degraded_without_global_rate(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"
        assert response.json()["global_rates"] == 0

    async def test_readiness_check(self, client: AsyncClient, org):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_not_ready_without_global_rate(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 503

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"


class TestActorHeader:
    async def test_missing_header(self, client: AsyncClient, org):
        response = await client.post(
            "/api/v1/timesheets", json={"week_start": WEEK.isoformat()}
        )
        assert response.status_code == 401

    async def test_malformed_header(self, client: AsyncClient, org):
        response = await client.post(
            "/api/v1/timesheets",
            headers={"X-User-ID": "not-a-uuid"},
            json={"week_start": WEEK.isoformat()},
        )
        assert response.status_code == 400


class TestTimesheetEndpoints:
    """Test the owner-facing timesheet flow."""

    async def test_open_timesheet(self, client: AsyncClient, org):
        data = await open_timesheet(client, org.alice)

        assert data["status"] == "draft"
        assert data["user_id"] == str(org.alice.user_id)
        assert data["week_end_date"] == "2024-03-10"

        again = await open_timesheet(client, org.alice)
        assert again["timesheet_id"] == data["timesheet_id"]

    async def test_week_must_start_on_monday(self, client: AsyncClient, org):
        response = await client.post(
            "/api/v1/timesheets", headers=as_user(org.alice), json={"week_start": "2024-03-06"}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_log_and_submit(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)

        response = await client.get(
            f"/api/v1/timesheets/{timesheet_id}", headers=as_user(org.alice)
        )
        assert response.status_code == 200
        data = response.json()
        assert data["timesheet"]["status"] == "submitted"
        assert Decimal(data["timesheet"]["total_hours"]) == Decimal("40")
        assert len(data["entries"]) == 5
        assert {e["status"] for e in data["entries"]} == {"submitted"}

        listed = await client.get(
            "/api/v1/timesheets", headers=as_user(org.alice), params={"status": "submitted"}
        )
        assert [t["timesheet_id"] for t in listed.json()] == [timesheet_id]

    async def test_custom_task_entry(self, client: AsyncClient, org):
        timesheet_id = (await open_timesheet(client, org.alice))["timesheet_id"]
        response = await client.post(
            f"/api/v1/timesheets/{timesheet_id}/entries",
            headers=as_user(org.alice),
            json={
                "kind": "custom_task",
                "project_id": str(org.apollo.project_id),
                "description": "Client workshop",
                "work_date": WEEK.isoformat(),
                "hours": "2.5",
            },
        )
        assert response.status_code == 201, response.text
        entry = response.json()["entry"]
        assert entry["entry_kind"] == "custom_task"
        assert entry["task_id"] is None
        assert entry["is_billable"] is False

    async def test_unknown_entry_kind(self, client: AsyncClient, org):
        timesheet_id = (await open_timesheet(client, org.alice))["timesheet_id"]
        response = await client.post(
            f"/api/v1/timesheets/{timesheet_id}/entries",
            headers=as_user(org.alice),
            json={"kind": "overtime", "project_id": str(org.apollo.project_id)},
        )
        assert response.status_code == 422

    async def test_update_and_delete_entry(self, client: AsyncClient, org):
        timesheet_id = (await open_timesheet(client, org.alice))["timesheet_id"]
        created = await client.post(
            f"/api/v1/timesheets/{timesheet_id}/entries",
            headers=as_user(org.alice),
            json={
                "kind": "project_task",
                "project_id": str(org.apollo.project_id),
                "task_id": str(org.apollo_build.task_id),
                "work_date": WEEK.isoformat(),
                "hours": "8",
            },
        )
        entry_id = created.json()["entry"]["time_entry_id"]

        updated = await client.patch(
            f"/api/v1/timesheets/entries/{entry_id}",
            headers=as_user(org.alice),
            json={"hours": "6.5"},
        )
        assert updated.status_code == 200
        assert Decimal(updated.json()["entry"]["hours"]) == Decimal("6.5")

        deleted = await client.delete(
            f"/api/v1/timesheets/entries/{entry_id}", headers=as_user(org.alice)
        )
        assert deleted.status_code == 204

    async def test_only_owner_submits(self, client: AsyncClient, org):
        timesheet_id = (await open_timesheet(client, org.alice))["timesheet_id"]
        response = await client.post(
            f"/api/v1/timesheets/{timesheet_id}/submit", headers=as_user(org.bob)
        )
        assert response.status_code == 403
        assert response.json()["code"] == "AUTHORIZATION_ERROR"

    async def test_empty_timesheet_cannot_be_submitted(self, client: AsyncClient, org):
        timesheet_id = (await open_timesheet(client, org.alice))["timesheet_id"]
        response = await client.post(
            f"/api/v1/timesheets/{timesheet_id}/submit", headers=as_user(org.alice)
        )
        assert response.status_code == 400

    async def test_unknown_timesheet(self, client: AsyncClient, org):
        response = await client.get(
            f"/api/v1/timesheets/{uuid4()}", headers=as_user(org.alice)
        )
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_delete_draft(self, client: AsyncClient, org):
        timesheet_id = (await open_timesheet(client, org.alice))["timesheet_id"]
        response = await client.request(
            "DELETE",
            f"/api/v1/timesheets/{timesheet_id}",
            headers=as_user(org.alice),
            json={"reason": "opened by mistake"},
        )
        assert response.status_code == 204


class TestApprovalEndpoints:
    """Test approval and project-week endpoints."""

    async def test_three_tier_approval(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        path = f"/api/v1/approvals/timesheets/{timesheet_id}/approve"

        lead = await client.post(path, headers=as_user(org.lead), json={})
        assert lead.status_code == 200, lead.text
        assert lead.json()["status_after"] == "lead_approved"

        manager = await client.post(path, headers=as_user(org.manager), json={})
        assert manager.json()["status_after"] == "manager_approved"

        management = await client.post(path, headers=as_user(org.management), json={})
        assert management.json()["status_after"] == "frozen"
        assert management.json()["timesheet"]["is_frozen"] is True

        history = await client.get(
            f"/api/v1/timesheets/{timesheet_id}/history", headers=as_user(org.alice)
        )
        assert len(history.json()) == 3

    async def test_reject_requires_reason(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        response = await client.post(
            f"/api/v1/approvals/timesheets/{timesheet_id}/reject",
            headers=as_user(org.lead),
            json={"reason": ""},
        )
        assert response.status_code == 422

    async def test_reject(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        response = await client.post(
            f"/api/v1/approvals/timesheets/{timesheet_id}/reject",
            headers=as_user(org.lead),
            json={"reason": "hours incorrect"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status_after"] == "lead_rejected"
        assert data["timesheet"]["lead_rejection_reason"] == "hours incorrect"

    async def test_self_approval_forbidden(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.lead, org.apollo, org.apollo_build)
        response = await client.post(
            f"/api/v1/approvals/timesheets/{timesheet_id}/approve",
            headers=as_user(org.lead),
            json={},
        )
        assert response.status_code == 403

    async def test_project_week_status(self, client: AsyncClient, org):
        await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        response = await client.get(
            f"/api/v1/approvals/project-weeks/{org.apollo.project_id}/{WEEK.isoformat()}",
            headers=as_user(org.lead),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["required_count"] == 3
        assert data["submitted_count"] == 1
        assert data["submission_complete"] is False

    async def test_bulk_approve_not_ready(self, client: AsyncClient, org):
        await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        response = await client.post(
            f"/api/v1/approvals/project-weeks/{org.apollo.project_id}/{WEEK.isoformat()}/approve",
            headers=as_user(org.lead),
            json={},
        )
        assert response.status_code == 409
        assert response.json()["code"] == "PRECONDITION_FAILED"

    async def test_bulk_reject(self, client: AsyncClient, org):
        await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        await log_and_submit(client, org.bob, org.apollo, org.apollo_build)
        response = await client.post(
            f"/api/v1/approvals/project-weeks/{org.apollo.project_id}/{WEEK.isoformat()}/reject",
            headers=as_user(org.lead),
            json={"reason": "missing notes"},
        )
        assert response.status_code == 200, response.text
        data = response.json()
        assert data["succeeded"] == 2
        assert data["status"]["rejected_count"] == 2


class TestBillingEndpoints:
    """Test adjustments, views and billing over HTTP."""

    async def freeze(self, client: AsyncClient, org) -> str:
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        path = f"/api/v1/approvals/timesheets/{timesheet_id}/approve"
        for reviewer in (org.lead, org.manager, org.management):
            response = await client.post(path, headers=as_user(reviewer), json={})
            assert response.status_code == 200, response.text
        return timesheet_id

    async def test_adjustment(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        response = await client.put(
            f"/api/v1/billing/timesheets/{timesheet_id}/adjustments",
            headers=as_user(org.manager),
            json={
                "adjustment_hours": "-5",
                "project_id": str(org.apollo.project_id),
                "reason": "Training",
            },
        )
        assert response.status_code == 200, response.text
        assert Decimal(response.json()["total_billable_hours"]) == Decimal("35")

        hours = await client.get(
            f"/api/v1/billing/timesheets/{timesheet_id}/billable-hours",
            headers=as_user(org.manager),
            params={"project_id": str(org.apollo.project_id)},
        )
        assert Decimal(hours.json()["billable_hours"]) == Decimal("35")

    async def test_employee_cannot_adjust(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        response = await client.put(
            f"/api/v1/billing/timesheets/{timesheet_id}/adjustments",
            headers=as_user(org.bob),
            json={"adjustment_hours": "2", "project_id": str(org.apollo.project_id)},
        )
        assert response.status_code == 403

    async def test_views_snapshot_and_bill(self, client: AsyncClient, org):
        timesheet_id = await self.freeze(client, org)

        views = await client.get(
            "/api/v1/billing/views",
            headers=as_user(org.management),
            params={"start": "2024-03-04", "end": "2024-03-10"},
        )
        assert views.status_code == 200, views.text
        assert views.json()["totals"]["amount"] == "4000.00"
        assert views.json()["projects"][0]["project_name"] == "Apollo"

        snapshot = await client.post(
            f"/api/v1/billing/timesheets/{timesheet_id}/snapshots",
            headers=as_user(org.management),
        )
        assert snapshot.status_code == 201, snapshot.text
        assert Decimal(snapshot.json()["billable_amount"]) == Decimal("4000")

        billed = await client.post(
            "/api/v1/billing/bill",
            headers=as_user(org.management),
            json={"timesheet_ids": [timesheet_id]},
        )
        assert billed.json()["succeeded"] == 1
        assert billed.json()["items"][0]["status"] == "billed"

        summary = await client.get(
            "/api/v1/billing/summary",
            headers=as_user(org.management),
            params={"start": "2024-03-04", "end": "2024-03-10"},
        )
        assert summary.json()["billed_revenue"] == "4000.00"

    async def test_views_forbidden_for_employee(self, client: AsyncClient, org):
        response = await client.get(
            "/api/v1/billing/views",
            headers=as_user(org.alice),
            params={"start": "2024-03-04", "end": "2024-03-10"},
        )
        assert response.status_code == 403

    async def test_create_rate(self, client: AsyncClient, org):
        response = await client.post(
            "/api/v1/billing/rates",
            headers=as_user(org.management),
            json={
                "entity_type": "project",
                "entity_id": str(org.apollo.project_id),
                "hourly_rate": "150.00",
                "effective_from": "2024-01-01",
            },
        )
        assert response.status_code == 201, response.text
        assert response.json()["entity_type"] == "project"

        listed = await client.get(
            "/api/v1/billing/rates",
            headers=as_user(org.management),
            params={"entity_type": "project"},
        )
        assert len(listed.json()) == 1

    async def test_rate_needs_entity(self, client: AsyncClient, org):
        response = await client.post(
            "/api/v1/billing/rates",
            headers=as_user(org.management),
            json={"entity_type": "user", "hourly_rate": "90", "effective_from": "2024-01-01"},
        )
        assert response.status_code == 400
        assert "entity_id" in response.json()["detail"]

    async def test_last_global_rate_protected(self, client: AsyncClient, org):
        response = await client.delete(
            f"/api/v1/billing/rates/{org.global_rate.rate_id}",
            headers=as_user(org.management),
        )
        assert response.status_code == 409


class TestReadAccess:
    """Test who may read a timesheet and its billing data."""

    async def test_owner_and_reviewers_read_timesheet(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        path = f"/api/v1/timesheets/{timesheet_id}"

        for reader in (org.alice, org.lead, org.manager, org.management, org.admin):
            response = await client.get(path, headers=as_user(reader))
            assert response.status_code == 200, (reader.full_name, response.text)
            assert len(response.json()["entries"]) == 5

    async def test_other_users_cannot_read_timesheet(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)

        for reader in (org.bob, org.outsider):
            response = await client.get(
                f"/api/v1/timesheets/{timesheet_id}", headers=as_user(reader)
            )
            assert response.status_code == 403
            assert response.json()["code"] == "AUTHORIZATION_ERROR"

        history = await client.get(
            f"/api/v1/timesheets/{timesheet_id}/history", headers=as_user(org.outsider)
        )
        assert history.status_code == 403

    async def test_unknown_reader(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        response = await client.get(
            f"/api/v1/timesheets/{timesheet_id}", headers={"X-User-ID": str(uuid4())}
        )
        assert response.status_code == 404

    async def test_billing_reads_checked(self, client: AsyncClient, org):
        timesheet_id = await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        base = f"/api/v1/billing/timesheets/{timesheet_id}"

        for suffix in ("billable-hours", "adjustments", "snapshots"):
            denied = await client.get(f"{base}/{suffix}", headers=as_user(org.bob))
            assert denied.status_code == 403, suffix
            owner = await client.get(f"{base}/{suffix}", headers=as_user(org.alice))
            assert owner.status_code == 200, suffix

        lead = await client.get(f"{base}/billable-hours", headers=as_user(org.lead))
        assert Decimal(lead.json()["billable_hours"]) == Decimal("40")


class TestProjectWeekFollowUp:
    """Test defaulter and review queue endpoints."""

    async def test_defaulters(self, client: AsyncClient, org):
        await log_and_submit(client, org.alice, org.apollo, org.apollo_build)
        path = f"/api/v1/approvals/project-weeks/{org.apollo.project_id}/{WEEK.isoformat()}"

        response = await client.get(f"{path}/defaulters", headers=as_user(org.lead))
        assert response.status_code == 200, response.text
        assert [d["user_name"] for d in response.json()] == ["Bob Brown", "Lee Lead"]

        status_ = await client.get(path, headers=as_user(org.lead))
        assert set(status_.json()["outstanding"]["submitted"]) == {
            str(org.bob.user_id),
            str(org.lead.user_id),
        }

        forbidden = await client.get(f"{path}/defaulters", headers=as_user(org.alice))
        assert forbidden.status_code == 403

    async def test_review_queue(self, client: AsyncClient, org):
        for user in (org.alice, org.bob, org.lead):
            await log_and_submit(client, user, org.apollo, org.apollo_build)

        response = await client.get(
            "/api/v1/approvals/queue",
            headers=as_user(org.lead),
            params={"week_start": WEEK.isoformat()},
        )
        assert response.status_code == 200, response.text
        queue = response.json()
        assert [item["tier"] for item in queue] == ["lead"]
        assert queue[0]["status"]["project_id"] == str(org.apollo.project_id)
        assert queue[0]["status"]["submission_complete"] is True

        empty = await client.get("/api/v1/approvals/queue", headers=as_user(org.bob))
        assert empty.json() == []
