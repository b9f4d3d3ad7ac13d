"""
Open Bookkeeping Payroll - API Tests

HTTP surface of the payroll router: status codes, money rendering and the
error envelope.
"""

import json

import pytest
from httpx import AsyncClient
from sqlalchemy.orm.exc import StaleDataError
from starlette.requests import Request

from app.utils.error_handling import ConcurrencyConflictException, stale_data_handler
from tests.conftest import OTHER_ENTITY_ID

BASE = "/api/v1/payroll"


async def create_march_run(client: AsyncClient) -> dict:
    response = await client.post(
        f"{BASE}/payroll-runs",
        json={"period_year": 2025, "period_month": 3, "pay_date": "2025-03-28"},
    )
    assert response.status_code == 201
    return response.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestPayrollRunEndpoints:
    """Create / read / list / delete."""

    @pytest.mark.asyncio
    async def test_create_run(self, client: AsyncClient, employees):
        data = await create_march_run(client)

        assert data["run_number"] == "PR-2025-01"
        assert data["status"] == "draft"
        assert data["period_end"] == "2025-03-31"
        assert data["total_gross_salary"] is None

    @pytest.mark.asyncio
    async def test_invalid_month_rejected(self, client: AsyncClient):
        response = await client.post(
            f"{BASE}/payroll-runs",
            json={"period_year": 2025, "period_month": 13, "pay_date": "2025-03-28"},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_duplicate_period(self, client: AsyncClient, employees):
        await create_march_run(client)

        response = await client.post(
            f"{BASE}/payroll-runs",
            json={"period_year": 2025, "period_month": 3, "pay_date": "2025-03-28"},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "DUPLICATE_PAY_PERIOD"

    @pytest.mark.asyncio
    async def test_list_and_get(self, client: AsyncClient, employees):
        run = await create_march_run(client)

        listed = await client.get(f"{BASE}/payroll-runs", params={"status": "draft"})
        fetched = await client.get(f"{BASE}/payroll-runs/{run['id']}")

        assert [r["id"] for r in listed.json()["items"]] == [run["id"]]
        assert fetched.json()["run_number"] == "PR-2025-01"

    @pytest.mark.asyncio
    async def test_unknown_run_is_404(self, client: AsyncClient):
        response = await client.get(f"{BASE}/payroll-runs/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "PAYROLL_RUN_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_other_tenant_gets_404(self, client: AsyncClient, employees):
        run = await create_march_run(client)

        response = await client.get(
            f"{BASE}/payroll-runs/{run['id']}",
            headers={"X-Entity-ID": str(OTHER_ENTITY_ID)},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_entity_header(self, client: AsyncClient):
        response = await client.get(f"{BASE}/payroll-runs", headers={"X-Entity-ID": "not-a-uuid"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_delete_draft(self, client: AsyncClient, employees):
        run = await create_march_run(client)

        response = await client.delete(f"{BASE}/payroll-runs/{run['id']}")

        assert response.status_code == 204
        assert (await client.get(f"{BASE}/payroll-runs/{run['id']}")).status_code == 404


class TestLifecycleEndpoints:
    """calculate -> approve -> finalize -> mark-paid over HTTP."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, client: AsyncClient, ledger, employees):
        run = await create_march_run(client)
        url = f"{BASE}/payroll-runs/{run['id']}"

        calculated = await client.post(f"{url}/calculate")
        assert calculated.status_code == 200
        body = calculated.json()
        assert body["run"]["status"] == "pending_review"
        assert body["run"]["total_gross_salary"] == "14000.00"
        assert body["run"]["total_net_salary"] == "12222.58"
        assert body["errors"] == []
        assert [s["net_salary"] for s in body["pay_slips"]] == ["4306.75", "5755.83", "2160.00"]

        assert (await client.post(f"{url}/approve")).json()["status"] == "approved"
        assert (await client.post(f"{url}/finalize")).json()["status"] == "finalized"

        paid = await client.post(f"{url}/mark-paid", json={"payment_date": "2025-03-28"})
        assert paid.status_code == 200
        assert paid.json()["status"] == "paid"
        assert paid.json()["payment_date"] == "2025-03-28"

        transitions = (await client.get(f"{url}/transitions")).json()
        assert [t["to_status"] for t in transitions] == [
            "calculating", "pending_review", "approved", "finalized", "paid",
        ]
        assert len(ledger.entries) == 2

    @pytest.mark.asyncio
    async def test_finalize_twice_is_a_no_op(self, client: AsyncClient, ledger, employees):
        run = await create_march_run(client)
        url = f"{BASE}/payroll-runs/{run['id']}"
        await client.post(f"{url}/calculate")
        await client.post(f"{url}/approve")

        first = await client.post(f"{url}/finalize")
        second = await client.post(f"{url}/finalize")

        assert first.status_code == second.status_code == 200
        assert second.json()["version"] == first.json()["version"]
        assert len(ledger.entries_for("accrual")) == 1

    @pytest.mark.asyncio
    async def test_invalid_transition_is_409(self, client: AsyncClient, employees):
        run = await create_march_run(client)

        response = await client.post(f"{BASE}/payroll-runs/{run['id']}/approve")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "INVALID_STATUS_TRANSITION"
        assert detail["details"]["current_status"] == "draft"
        assert detail["retryable"] is False

    @pytest.mark.asyncio
    async def test_ledger_failure_is_502_and_retryable(self, client: AsyncClient, ledger, employees):
        run = await create_march_run(client)
        url = f"{BASE}/payroll-runs/{run['id']}"
        await client.post(f"{url}/calculate")
        await client.post(f"{url}/approve")
        ledger.fail_with = "Ledger unavailable"

        response = await client.post(f"{url}/finalize")

        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "LEDGER_POSTING_FAILED"
        assert response.json()["detail"]["retryable"] is True
        assert (await client.get(url)).json()["status"] == "approved"

    @pytest.mark.asyncio
    async def test_future_payment_date(self, client: AsyncClient, employees):
        run = await create_march_run(client)
        url = f"{BASE}/payroll-runs/{run['id']}"
        await client.post(f"{url}/calculate")
        await client.post(f"{url}/approve")
        await client.post(f"{url}/finalize")

        response = await client.post(f"{url}/mark-paid", json={"payment_date": "2030-01-01"})

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "PAYMENT_DATE_IN_FUTURE"

    @pytest.mark.asyncio
    async def test_cancel_with_reason(self, client: AsyncClient, employees):
        run = await create_march_run(client)

        response = await client.post(
            f"{BASE}/payroll-runs/{run['id']}/cancel",
            json={"reason": "Wrong pay date"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["notes"] == "Wrong pay date"

    @pytest.mark.asyncio
    async def test_missing_actor_is_rejected(self, client: AsyncClient, employees):
        """Status changes need to know who made them."""
        run = await create_march_run(client)
        request = client.build_request("POST", f"{BASE}/payroll-runs/{run['id']}/calculate")
        del request.headers["X-Actor-ID"]

        response = await client.send(request)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert detail["details"]["errors"][0]["field"] == "header.X-Actor-ID"
        assert (await client.get(f"{BASE}/payroll-runs/{run['id']}")).json()["status"] == "draft"

    @pytest.mark.asyncio
    async def test_no_active_employees(self, client: AsyncClient):
        run = await create_march_run(client)

        response = await client.post(f"{BASE}/payroll-runs/{run['id']}/calculate")

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "NO_ACTIVE_EMPLOYEES"


class TestAnalysisEndpoints:
    @pytest.mark.asyncio
    async def test_pay_slip_detail_and_variances(self, client: AsyncClient, employees):
        run = await create_march_run(client)
        calculated = (await client.post(f"{BASE}/payroll-runs/{run['id']}/calculate")).json()
        slip_id = calculated["pay_slips"][0]["id"]

        slip = (await client.get(f"{BASE}/pay-slips/{slip_id}")).json()
        variances = await client.get(f"{BASE}/pay-slips/{slip_id}/variances")

        assert slip["pension_employee"] == "550.00"
        assert slip["pension_employer"] == "650.00"
        assert slip["income_tax"] == "108.25"
        assert slip["rate_sources"]["pension"] == {"employee": "table", "employer": "table"}
        assert variances.status_code == 200
        assert variances.json() == []

    @pytest.mark.asyncio
    async def test_deadline(self, client: AsyncClient, employees):
        run = await create_march_run(client)

        response = await client.get(f"{BASE}/payroll-runs/{run['id']}/deadline")

        assert response.json() == {
            "due_date": "2025-04-15",
            "days_until_due": -5,
            "classification": "overdue",
        }

    @pytest.mark.asyncio
    async def test_statutory_payments(self, client: AsyncClient, employees):
        run = await create_march_run(client)
        url = f"{BASE}/payroll-runs/{run['id']}"
        await client.post(f"{url}/calculate")

        response = await client.get(f"{url}/statutory-payments")

        assert response.status_code == 200
        body = response.json()
        assert body["due_date"] == "2025-04-15"
        assert body["classification"] == "overdue"
        assert body["remittances"][0] == {
            "agency": "EPF",
            "category": "pension",
            "employee": "550.00",
            "employer": "890.00",
            "total": "1440.00",
            "due_date": "2025-04-15",
        }
        assert [r["agency"] for r in body["remittances"]] == ["EPF", "SOCSO", "EIS", "PCB"]
        assert body["remittances"][3]["employer"] == "0.00"
        assert body["total_payable"] == "2839.92"

    @pytest.mark.asyncio
    async def test_cancelled_run_has_no_statutory_payments(self, client: AsyncClient, employees):
        run = await create_march_run(client)
        url = f"{BASE}/payroll-runs/{run['id']}"
        await client.post(f"{url}/cancel")

        response = await client.get(f"{url}/statutory-payments")

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "PRECONDITION_FAILED"


class TestErrorEnvelope:
    @pytest.mark.asyncio
    async def test_stale_version_matches_conflict_exception(self):
        """A stale write and a detected conflict tell the client the same thing."""
        request = Request({
            "type": "http",
            "method": "POST",
            "path": "/api/v1/payroll/payroll-runs/x/approve",
            "headers": [],
            "query_string": b"",
            "scheme": "http",
            "server": ("test", 80),
            "root_path": "",
        })

        response = await stale_data_handler(request, StaleDataError("version mismatch"))

        detail = json.loads(response.body)["detail"]
        expected = ConcurrencyConflictException("x").to_dict()
        assert response.status_code == 409
        assert detail["code"] == expected["code"] == "VERSION_CONFLICT"
        assert detail["retryable"] is expected["retryable"] is False
