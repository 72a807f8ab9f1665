"""
Integration tests for the end-to-end purchase flow over HTTP.

The app runs against a temporary SQLite database and an in-process payment
provider; the access controller is played by plain GET requests.
"""
from typing import Any, Awaitable, Callable

import pytest
from httpx import ASGITransport, AsyncClient

from hotspot_bridge.api.main import app
from hotspot_bridge.config import get_settings
from hotspot_bridge.integrations.daraja_client import GatewayError, GatewayErrorType

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


class TestPurchaseFlow:
    """Integration tests for the payment API."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_customer_reaches_access_controller(
        self, client: AsyncClient, gateway: Any, callback_payload: Callable[..., dict]
    ) -> None:
        gateway.checkout_ids = ["abc123"]

        response = await client.post(
            "/stk-push", json={"phone": "0712345678", "plan": "1hr", "amount": 10}
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "checkoutID": "abc123"}

        response = await client.get("/status/abc123")
        assert response.json() == {"paid": False}

        response = await client.post("/callback", json=callback_payload("abc123", receipt="RCX1"))
        assert response.status_code == 200
        assert response.json() == ACK

        response = await client.get("/status/abc123")
        assert response.json() == {"paid": True, "plan": "1hr"}

        response = await client.get("/next-user")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "254712345678,1hr"

        response = await client.get("/next-user")
        assert response.text == "none,none"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_callback_is_acknowledged(
        self,
        client: AsyncClient,
        callback_payload: Callable[..., dict],
        transaction_count: Callable[[], Awaitable[int]],
    ) -> None:
        response = await client.post("/callback", json=callback_payload("never-issued"))

        assert response.status_code == 200
        assert response.json() == ACK
        assert await transaction_count() == 0
        assert (await client.get("/next-user")).text == "none,none"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_callback_enqueues_once(
        self, client: AsyncClient, gateway: Any, callback_payload: Callable[..., dict]
    ) -> None:
        gateway.checkout_ids = ["abc123"]
        await client.post("/stk-push", json={"phone": "0712345678", "plan": "1hr", "amount": 10})

        for _ in range(3):
            response = await client.post("/callback", json=callback_payload("abc123"))
            assert response.json() == ACK

        response = await client.get("/queue")
        assert response.json() == {
            "length": 1,
            "queue": [{"phone": "254712345678", "plan": "1hr"}],
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_payment_stays_unpaid(
        self, client: AsyncClient, gateway: Any, callback_payload: Callable[..., dict]
    ) -> None:
        gateway.checkout_ids = ["abc123"]
        await client.post("/stk-push", json={"phone": "0712345678", "plan": "1hr", "amount": 10})

        response = await client.post("/callback", json=callback_payload("abc123", result_code=1032))

        assert response.json() == ACK
        assert (await client.get("/status/abc123")).json() == {"paid": False}
        assert (await client.get("/next-user")).text == "none,none"

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"phone": "0712345678", "plan": "1hr", "amount": 0},
            {"phone": "0712345678", "plan": "1hr", "amount": 10.5},
            {"phone": "", "plan": "1hr", "amount": 10},
            {"plan": "1hr", "amount": 10},
            {"phone": "0712345678", "amount": 10},
        ],
    )
    async def test_invalid_purchase_request(self, client: AsyncClient, gateway: Any, body: dict) -> None:
        response = await client.post("/stk-push", json=body)

        assert response.status_code == 400
        assert "error" in response.json()
        assert gateway.calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
    async def test_non_finite_amount_rejected(
        self,
        client: AsyncClient,
        gateway: Any,
        transaction_count: Callable[[], Awaitable[int]],
        literal: str,
    ) -> None:
        response = await client.post(
            "/stk-push",
            content='{"phone": "0712345678", "plan": "1hr", "amount": %s}' % literal,
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Amount must be a finite number"}
        assert gateway.calls == []
        assert await transaction_count() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"phone": "0712345678", "plan": "1hr,24hr", "amount": 10},
            {"phone": "0712345678", "plan": "1hr\n254799999999,24hr", "amount": 10},
            {"phone": "07123,45678", "plan": "1hr", "amount": 10},
        ],
    )
    async def test_record_separators_rejected(self, client: AsyncClient, gateway: Any, body: dict) -> None:
        response = await client.post("/stk-push", json=body)

        assert response.status_code == 400
        assert gateway.calls == []
        assert (await client.get("/next-user")).text == "none,none"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_redelivered_after_failure_is_acknowledged(
        self, client: AsyncClient, gateway: Any, callback_payload: Callable[..., dict]
    ) -> None:
        gateway.checkout_ids = ["abc123"]
        await client.post("/stk-push", json={"phone": "0712345678", "plan": "1hr", "amount": 10})
        await client.post("/callback", json=callback_payload("abc123", result_code=1032))

        response = await client.post("/callback", json=callback_payload("abc123"))

        assert response.status_code == 200
        assert response.json() == ACK
        assert (await client.get("/status/abc123")).json() == {"paid": False}
        assert (await client.get("/next-user")).text == "none,none"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_queue_outage_gets_callback_redelivered(
        self,
        client: AsyncClient,
        gateway: Any,
        pull_queue: Any,
        callback_payload: Callable[..., dict],
        mocker: Any,
    ) -> None:
        gateway.checkout_ids = ["abc123"]
        await client.post("/stk-push", json={"phone": "0712345678", "plan": "1hr", "amount": 10})
        mocker.patch.object(pull_queue, "enqueue", side_effect=ConnectionError("redis gone"))

        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as provider:
            response = await provider.post("/callback", json=callback_payload("abc123"))

        assert response.status_code == 500
        assert (await client.get("/status/abc123")).json() == {"paid": False}

        mocker.stopall()
        response = await client.post("/callback", json=callback_payload("abc123"))

        assert response.json() == ACK
        assert (await client.get("/status/abc123")).json() == {"paid": True, "plan": "1hr"}
        assert (await client.get("/next-user")).text == "254712345678,1hr"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_unavailable(
        self,
        client: AsyncClient,
        gateway: Any,
        transaction_count: Callable[[], Awaitable[int]],
    ) -> None:
        gateway.error = GatewayError("Provider unreachable", GatewayErrorType.TRANSPORT)

        response = await client.post(
            "/stk-push", json={"phone": "0712345678", "plan": "1hr", "amount": 10}
        )

        assert response.status_code == 503
        assert response.json() == {"error": "M-Pesa session failed"}
        assert await transaction_count() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_callback_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/callback", json={"Body": {}})

        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "Invalid request"
        assert data["errors"]


class TestVoucherFlow:
    """Voucher issue and redemption over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_issue_and_redeem(self, client: AsyncClient) -> None:
        response = await client.post("/admin/vouchers", json={"plan": "24hr", "code": "WIFI2024"})
        assert response.status_code == 201
        assert response.json()["used"] is False

        response = await client.post("/voucher/redeem", json={"code": "wifi2024", "phone": "0712345678"})
        assert response.status_code == 200
        assert response.json()["success"] is True

        response = await client.post("/voucher/redeem", json={"code": "WIFI2024", "phone": "0712345678"})
        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid or used voucher"}

        assert (await client.get("/next-user")).text == "254712345678,24hr"

        response = await client.get("/admin/vouchers", params={"used": "true"})
        assert [v["code"] for v in response.json()] == ["WIFI2024"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redeem_requires_code_and_phone(self, client: AsyncClient) -> None:
        response = await client.post("/voucher/redeem", json={"code": "", "phone": "0712345678"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_voucher_code_conflicts(self, client: AsyncClient) -> None:
        await client.post("/admin/vouchers", json={"plan": "1hr", "code": "SAMECODE"})

        response = await client.post("/admin/vouchers", json={"plan": "1hr", "code": "SAMECODE"})

        assert response.status_code == 409


class TestAdminAndMonitoring:
    """Admin reports and probes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sales_report(
        self, client: AsyncClient, gateway: Any, callback_payload: Callable[..., dict]
    ) -> None:
        gateway.checkout_ids = ["abc123", "def456"]
        await client.post("/stk-push", json={"phone": "0712345678", "plan": "1hr", "amount": 10})
        await client.post("/stk-push", json={"phone": "0798765432", "plan": "24hr", "amount": 50})
        await client.post("/callback", json=callback_payload("abc123", receipt="RCX1"))

        response = await client.get("/admin/sales")

        assert response.status_code == 200
        sales = response.json()
        assert len(sales) == 1
        assert sales[0]["checkout_request_id"] == "abc123"
        assert sales[0]["mpesa_receipt"] == "RCX1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_key_enforced_when_configured(self, client: AsyncClient, monkeypatch: Any) -> None:
        monkeypatch.setattr(get_settings(), "admin_api_key", "s3cret")

        assert (await client.get("/admin/sales")).status_code == 401
        assert (await client.get("/admin/sales", headers={"X-API-Key": "wrong"})).status_code == 401
        assert (await client.get("/admin/sales", headers={"X-API-Key": "s3cret"})).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ping(self, client: AsyncClient) -> None:
        response = await client.get("/ping")

        assert response.status_code == 200
        assert response.json() == {"status": "Awake"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        await client.get("/next-user")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "pull_queue_polls_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_header(self, client: AsyncClient) -> None:
        response = await client.get("/ping", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
