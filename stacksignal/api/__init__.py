"""
Persistence-facing services: company registry and LLM budget ledger
"""

from .company_registry import CompanyRegistry
from .llm_budget_service import LLMBudgetService

__all__ = ["CompanyRegistry", "LLMBudgetService"]
