"""
Tool classifier - ask an LLM whether a job posting mentions Outreach.io or SalesLoft

Uses LangChain's ChatOpenAI. The client's own retries are disabled; retry and
backoff are owned by the worker so every attempt is logged and counted in
one place.
"""

import logging
import time
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from stacksignal.api.llm_budget_service import LLMBudgetService
from stacksignal.config import PipelineConfig
from stacksignal.exceptions import BudgetExceededError, ClassificationError
from stacksignal.models import JobRecord

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You decide whether a company uses the sales engagement platforms Outreach.io or SalesLoft, based on one of its job postings.

Count it only when the posting names the product: "Outreach.io", "Outreach" capitalized in a list of tools, "experience with Outreach", "SalesLoft", "Salesloft" or "Sales Loft".
Generic sales activity ("cold outreach", "customer outreach", "outreach efforts") is NOT the tool.

Respond with ONLY a JSON object, no markdown:
{
  "uses_tool": true or false,
  "tool_detected": "Outreach.io" | "SalesLoft" | "Both" | "None",
  "signal_type": "required" | "preferred" | "stack_mention" | "none",
  "evidence": "short exact quote mentioning the tool, empty if none"
}"""


class ToolClassifier:
    """Sends one job at a time to the classification service and returns raw text"""

    def __init__(
        self,
        config: PipelineConfig,
        llm: Any | None = None,
        budget_service: LLMBudgetService | None = None,
    ):
        """
        Args:
            config: Pipeline configuration
            llm: Chat model with an invoke(messages) method. Built from config when omitted.
            budget_service: Optional spend ledger consulted before each call

        Raises:
            ConfigError: If llm is omitted and the API key is not set
        """
        self.config = config
        self.timeout_seconds = config.llm.timeout_seconds
        self.max_description_chars = config.llm.max_description_chars
        self.budget_service = budget_service
        self.llm = llm if llm is not None else self._build_llm(config)

    @staticmethod
    def _build_llm(config: PipelineConfig) -> ChatOpenAI:
        kwargs: dict[str, Any] = {
            "api_key": config.api_key(),
            "model": config.llm.model,
            "timeout": config.llm.timeout_seconds,
            "max_retries": 0,
        }
        if config.llm.base_url:
            kwargs["base_url"] = config.llm.base_url
        if config.llm.temperature is not None:
            kwargs["temperature"] = config.llm.temperature
        return ChatOpenAI(**kwargs)

    def build_messages(self, job: JobRecord) -> list:
        description = (job.description or "")[: self.max_description_chars]
        return [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(
                content=(
                    f"Company: {job.company}\n"
                    f"Job Title: {job.job_title}\n"
                    f"Job Description: {description}"
                )
            ),
        ]

    def budget_available(self) -> bool:
        if self.budget_service is None or not self.config.budget.pause_when_exceeded:
            return True
        return self.budget_service.budget_available()

    def classify(self, job: JobRecord) -> str:
        """
        Classify one job and return the raw response text

        Raises:
            BudgetExceededError: If the monthly budget is spent and pausing is enabled
            ClassificationError: On timeout or any transport/API failure
        """
        if not self.budget_available():
            raise BudgetExceededError("Monthly LLM budget exhausted, classification paused")

        start_time = time.monotonic()
        try:
            response = self.llm.invoke(self.build_messages(job))
        except Exception as e:
            raise ClassificationError(f"{type(e).__name__}: {e}") from e

        elapsed = time.monotonic() - start_time
        # Billed even when the answer arrives too late to use
        self._record_usage(response)
        if elapsed > self.timeout_seconds:
            raise ClassificationError(
                f"Classification timeout ({elapsed:.1f}s > {self.timeout_seconds}s)"
            )

        logger.debug(f"Classifier answered for {job.company} in {elapsed:.1f}s")
        return self._response_text(response)

    def _record_usage(self, response: Any) -> None:
        if self.budget_service is None:
            return
        usage = getattr(response, "usage_metadata", None) or {}
        tokens_in = usage.get("input_tokens", 0)
        tokens_out = usage.get("output_tokens", 0)
        if tokens_in or tokens_out:
            self.budget_service.record_usage(tokens_in, tokens_out, model=self.config.llm.model)

    @staticmethod
    def _response_text(response: Any) -> str:
        content = getattr(response, "content", response)
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            # Content blocks: keep the text parts
            parts = []
            for block in content:
                if isinstance(block, str):
                    parts.append(block)
                elif isinstance(block, dict) and block.get("type") == "text":
                    parts.append(block.get("text", ""))
            return "".join(parts)
        return ""
