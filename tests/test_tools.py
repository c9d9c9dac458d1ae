"""
Tests for the read-only tools the orchestrator can call.
"""

import json
from datetime import date
from decimal import Decimal

import pytest

from recurwatch.models.subscription import Subscription, SubscriptionStatus
from recurwatch.queries import ToolExecutor, ToolResult
from recurwatch.services.storage import InMemoryStorage, StorageUnavailableError


@pytest.fixture
def storage(txns):
    storage = InMemoryStorage()
    storage.add_transactions(txns.monthly("NETFLIX.COM*1A2B3", date(2024, 1, 15), 4))
    storage.add_transactions(txns.monthly("SPOTIFY USA 123456", date(2024, 1, 3), 2, "10.99"))
    storage.add_transaction(txns("NETFLIX.COM", date(2024, 3, 20), "15.49", credit=True))
    storage.add_transaction(txns("NETFLIX.COM", date(2024, 4, 20), "15.49", archived=True))
    return storage


@pytest.fixture
def tools(storage):
    return ToolExecutor(storage)


class TestSearchTransactions:
    """Tests for search_transactions."""

    @pytest.mark.asyncio
    async def test_merchant_fragment(self, tools):
        """Case-insensitive fragments match, newest first, archived never."""
        result = await tools.execute("search_transactions", {"merchant": "netflix"})

        assert result.success
        assert result.result_count == 5
        dates = [r["date"] for r in result.results]
        assert dates == sorted(dates, reverse=True)
        assert "2024-04-20" not in dates

    @pytest.mark.asyncio
    async def test_normalized_key_match(self, tools):
        """A normalized merchant key finds the raw descriptions."""
        result = await tools.execute("search_transactions", {"merchant": "SPOTIFY USA 999"})

        assert result.result_count == 2

    @pytest.mark.asyncio
    async def test_limit_and_dates(self, tools):
        result = await tools.execute("search_transactions", {
            "merchant": "NETFLIX",
            "date_from": "2024-02-01",
            "limit": 2,
        })

        assert [r["date"] for r in result.results] == ["2024-04-15", "2024-03-20"]

    @pytest.mark.asyncio
    async def test_no_data(self, tools):
        """Nothing found is a success with zero results."""
        result = await tools.execute("search_transactions", {"merchant": "HULU"})

        assert result.success
        assert not result.data_found
        assert json.loads(result.to_output()) == {"result_count": 0, "results": []}


class TestSpendingSummary:
    """Tests for get_spending_summary."""

    @pytest.mark.asyncio
    async def test_monthly_totals_exclude_refunds(self, tools):
        result = await tools.execute("get_spending_summary", {"merchant": "NETFLIX"})

        assert [r["month"] for r in result.results] == ["2024-01", "2024-02", "2024-03", "2024-04"]
        assert all(r["count"] == 1 for r in result.results)
        assert result.results[0]["total"] == Decimal("15.49")

    @pytest.mark.asyncio
    async def test_merchant_required(self, tools):
        result = await tools.execute("get_spending_summary", {})

        assert not result.success
        assert result.error_message.startswith("Invalid arguments")


class TestGetSubscriptions:
    """Tests for get_subscriptions."""

    @pytest.mark.asyncio
    async def test_status_filter(self, storage, tools):
        for merchant, status in (
            ("NETFLIX.COM", SubscriptionStatus.ZOMBIE),
            ("SPOTIFY USA", SubscriptionStatus.ACTIVE),
        ):
            await storage.save_subscription(Subscription(
                merchant=merchant,
                account_id=1,
                amount=Decimal("9.99"),
                first_seen=date(2024, 1, 1),
                last_seen=date(2024, 4, 1),
                status=status,
            ))

        result = await tools.execute("get_subscriptions", {"status": "zombie"})

        assert [r["merchant"] for r in result.results] == ["NETFLIX.COM"]
        assert result.results[0]["status"] == "zombie"


class FailingStorage(InMemoryStorage):
    async def list_transactions(self, account_id=None, date_from=None, date_to=None):
        raise StorageUnavailableError("offline")


class TestExecutor:
    """Tests for argument handling and failures."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, tools):
        result = await tools.execute("drop_table", {})

        assert not result.success
        assert json.loads(result.to_output()) == {"error": "Unknown tool: drop_table"}

    @pytest.mark.asyncio
    async def test_unexpected_argument_type(self, tools):
        result = await tools.execute("search_transactions", {"limit": "lots"})

        assert not result.success

    @pytest.mark.asyncio
    async def test_storage_failure_reported(self):
        """Storage errors become failed results, not crashes."""
        result = await ToolExecutor(FailingStorage()).execute("search_transactions", {})

        assert not result.success
        assert "offline" in result.error_message

    def test_describe_lists_every_tool(self, tools):
        description = tools.describe()

        for name in tools.tool_names:
            assert name in description
        assert "merchant" in description

    def test_failed_result_output(self):
        output = ToolResult(name="x", success=False, error_message="nope").to_output()
        assert json.loads(output) == {"error": "nope"}
