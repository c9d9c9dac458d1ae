"""
Read-only Tool Execution

DESIGN DECISION: Tool execution is DETERMINISTIC.
The orchestrator's model asks for a tool by name with JSON arguments.
This engine validates those arguments and runs the matching query on
actual stored data. The model then explains the alert from the results.

At no point does the model have write access to storage.
It can only see what this engine returns.

This is the critical boundary that keeps verification from changing
what the detectors decided.
"""

import json
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from recurwatch.detection.series import normalize_merchant
from recurwatch.models.subscription import SubscriptionStatus
from recurwatch.models.transaction import Transaction
from recurwatch.services.storage import DetectionStorageInterface, StorageError


# =============================================================================
# TOOL PARAMETERS
# =============================================================================

class SearchTransactionsParams(BaseModel):
    """Find charges for a merchant."""

    merchant: Optional[str] = Field(
        default=None,
        description="Merchant name or fragment of the bank description"
    )
    account_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    limit: int = Field(default=20, ge=1, le=100)


class SpendingSummaryParams(BaseModel):
    """Summarize spending with a merchant, month by month."""

    merchant: str = Field(..., min_length=1)
    account_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class GetSubscriptionsParams(BaseModel):
    """List known subscriptions."""

    status: Optional[SubscriptionStatus] = None
    account_id: Optional[int] = None


TOOL_PARAMS: dict[str, type[BaseModel]] = {
    "search_transactions": SearchTransactionsParams,
    "get_spending_summary": SpendingSummaryParams,
    "get_subscriptions": GetSubscriptionsParams,
}


class ToolResult(BaseModel):
    """Outcome of one tool call, fed back to the model as JSON."""

    name: str
    success: bool
    data_found: bool = False
    result_count: int = 0
    results: Any = None
    error_message: Optional[str] = None

    def to_output(self) -> str:
        if not self.success:
            return json.dumps({"error": self.error_message})
        return json.dumps(
            {"result_count": self.result_count, "results": self.results},
            default=str,
        )


class ToolExecutor:
    """
    Executes read-only tools against detection storage.

    GUARANTEES:
    - Only returns real data from storage
    - Never writes
    - Clear "no data found" (result_count 0) if nothing matches
    """

    def __init__(self, storage: DetectionStorageInterface):
        self._storage = storage

    @property
    def tool_names(self) -> list[str]:
        return list(TOOL_PARAMS)

    def describe(self) -> str:
        """One line per tool with its parameters, for the system prompt."""
        lines = []
        for name, params in TOOL_PARAMS.items():
            fields = ", ".join(params.model_fields)
            lines.append(f"- {name}({fields}): {params.__doc__.strip()}")
        return "\n".join(lines)

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """
        Validate arguments and run one tool.

        Unknown names and bad arguments come back as failed results so
        the model can correct itself.
        """
        params_model = TOOL_PARAMS.get(name)
        if params_model is None:
            return ToolResult(
                name=name,
                success=False,
                error_message=f"Unknown tool: {name}",
            )

        try:
            params = params_model(**arguments)
            if name == "search_transactions":
                results = await self._search_transactions(params)
            elif name == "get_spending_summary":
                results = await self._spending_summary(params)
            else:
                results = await self._get_subscriptions(params)
        except (ValidationError, TypeError) as e:
            return ToolResult(name=name, success=False, error_message=f"Invalid arguments: {e}")
        except StorageError as e:
            return ToolResult(name=name, success=False, error_message=f"Query failed: {e}")

        count = len(results)
        return ToolResult(
            name=name,
            success=True,
            data_found=count > 0,
            result_count=count,
            results=results,
        )

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    async def _matching_transactions(
        self,
        merchant: Optional[str],
        account_id: Optional[int],
        date_from: Optional[date],
        date_to: Optional[date],
    ) -> list[Transaction]:
        transactions = await self._storage.list_transactions(
            account_id=account_id,
            date_from=date_from,
            date_to=date_to,
        )
        if not merchant:
            return transactions

        needle = merchant.upper().strip()
        key = normalize_merchant(merchant)
        return [
            t for t in transactions
            if needle in t.description.upper() or normalize_merchant(t.description) == key
        ]

    async def _search_transactions(self, params: SearchTransactionsParams) -> list[dict]:
        transactions = await self._matching_transactions(
            params.merchant, params.account_id, params.date_from, params.date_to,
        )
        # Most recent first
        transactions = sorted(transactions, key=lambda t: (t.date, t.id), reverse=True)
        return [self._transaction_to_dict(t) for t in transactions[:params.limit]]

    async def _spending_summary(self, params: SpendingSummaryParams) -> list[dict]:
        transactions = await self._matching_transactions(
            params.merchant, params.account_id, params.date_from, params.date_to,
        )
        expenses = [t for t in transactions if t.is_expense]

        by_month: dict[str, list[Decimal]] = defaultdict(list)
        for t in expenses:
            by_month[t.date.strftime("%Y-%m")].append(abs(t.amount))

        return [
            {
                "month": month,
                "count": len(amounts),
                "total": sum(amounts, Decimal("0.00")),
            }
            for month, amounts in sorted(by_month.items())
        ]

    async def _get_subscriptions(self, params: GetSubscriptionsParams) -> list[dict]:
        subscriptions = await self._storage.list_subscriptions(
            account_id=params.account_id,
            status=params.status,
        )
        return [
            {
                "id": s.id,
                "merchant": s.merchant,
                "account_id": s.account_id,
                "amount": s.amount,
                "frequency": s.frequency.value if s.frequency else None,
                "status": s.status.value,
                "category": s.category,
                "first_seen": s.first_seen.isoformat(),
                "last_seen": s.last_seen.isoformat(),
            }
            for s in subscriptions
        ]

    def _transaction_to_dict(self, t: Transaction) -> dict:
        return {
            "id": t.id,
            "account_id": t.account_id,
            "date": t.date.isoformat(),
            "amount": t.amount,
            "description": t.description,
        }
