"""
LLM Budget Tracking Service - monthly token/cost ledger for classification calls
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class LLMBudgetService:
    """Track classification API spend per calendar month and enforce a limit"""

    def __init__(
        self,
        monthly_limit: float = 20.0,
        input_cost_per_million: float = 0.25,
        output_cost_per_million: float = 2.0,
        logs_dir: str = "logs",
    ):
        """
        Args:
            monthly_limit: Maximum monthly spend in USD
            input_cost_per_million: USD per 1M input tokens, used to estimate cost
            output_cost_per_million: USD per 1M output tokens
            logs_dir: Directory holding llm-budget-YYYY-MM.json ledgers
        """
        self.monthly_limit = monthly_limit
        self.input_cost_per_million = input_cost_per_million
        self.output_cost_per_million = output_cost_per_million
        self.logs_dir = Path(logs_dir)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def _ledger_path(self, when: datetime | None = None) -> Path:
        when = when or datetime.now()
        return self.logs_dir / f"llm-budget-{when.year}-{when.month:02d}.json"

    def _load_ledger(self, when: datetime | None = None) -> dict[str, Any]:
        path = self._ledger_path(when)
        if not path.exists():
            return {"calls": 0, "tokens_in": 0, "tokens_out": 0, "total_cost": 0.0}

        try:
            with path.open() as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load budget ledger {path}: {e}")
            return {"calls": 0, "tokens_in": 0, "tokens_out": 0, "total_cost": 0.0}

    def _save_ledger(self, data: dict[str, Any], when: datetime | None = None) -> None:
        path = self._ledger_path(when)
        try:
            with path.open("w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save budget ledger {path}: {e}")

    def estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        """Estimate USD cost from token counts"""
        return (tokens_in / 1_000_000) * self.input_cost_per_million + (
            tokens_out / 1_000_000
        ) * self.output_cost_per_million

    def get_monthly_spend(self, when: datetime | None = None) -> float:
        return float(self._load_ledger(when).get("total_cost", 0.0))

    def budget_available(self, when: datetime | None = None) -> bool:
        """True while this month's spend is under the limit"""
        return self.get_monthly_spend(when) < self.monthly_limit

    def record_usage(self, tokens_in: int, tokens_out: int, model: str | None = None) -> float:
        """
        Add one classification call to this month's ledger

        Returns:
            Estimated cost of the call in USD
        """
        now = datetime.now()
        cost = self.estimate_cost(tokens_in, tokens_out)

        data = self._load_ledger(now)
        data["calls"] = data.get("calls", 0) + 1
        data["tokens_in"] = data.get("tokens_in", 0) + tokens_in
        data["tokens_out"] = data.get("tokens_out", 0) + tokens_out
        data["total_cost"] = data.get("total_cost", 0.0) + cost
        data["last_model"] = model
        data["updated_at"] = now.isoformat()
        self._save_ledger(data, now)

        if data["total_cost"] >= self.monthly_limit:
            logger.warning(f"Monthly LLM budget of ${self.monthly_limit:.2f} has been reached")

        return cost

    def get_budget_status(self) -> dict[str, Any]:
        """Current month's spend summary"""
        now = datetime.now()
        data = self._load_ledger(now)
        spent = float(data.get("total_cost", 0.0))

        return {
            "month": f"{now.year}-{now.month:02d}",
            "monthly_limit": self.monthly_limit,
            "total_spent": round(spent, 6),
            "remaining": round(self.monthly_limit - spent, 6),
            "api_calls": data.get("calls", 0),
            "budget_available": spent < self.monthly_limit,
        }
