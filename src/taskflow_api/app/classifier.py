"""Task classification stage.

The classifier maps free task text to one category label. It can never fail
observably: provider errors and empty answers both produce DEFAULT_CATEGORY.
The model's answer is normalized (trimmed, uppercased) but not checked
against TASK_CATEGORIES.
"""

from __future__ import annotations

import logging

from .llm import LLMAdapter

logger = logging.getLogger(__name__)

TASK_CATEGORIES: dict[str, str] = {
    "CODE": "Writing, reviewing, or modifying code",
    "DEPLOY": "Deploying applications or infrastructure",
    "SCRAPE": "Web scraping or data extraction",
    "ANALYSIS": "Data analysis or research",
    "AUTOMATION": "Setting up automated workflows",
    "INFRASTRUCTURE": "Managing servers, containers, or cloud resources",
    "SECURITY": "Security audits, encryption, or access control",
    "DOCUMENTATION": "Writing or updating documentation",
}
DEFAULT_CATEGORY = "CODE"


def build_classifier_prompt() -> str:
    lines = "\n".join(f"- {name}: {meaning}" for name, meaning in TASK_CATEGORIES.items())
    return (
        "You are a task classifier. Classify the following task into one of these categories:\n"
        f"{lines}\n\n"
        "Respond with ONLY the category name."
    )


class TaskClassifier:
    def __init__(
        self,
        *,
        llm_adapter: LLMAdapter | None,
        temperature: float = 0.3,
        max_tokens: int = 50,
    ) -> None:
        self.llm_adapter = llm_adapter
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def classify(self, task_text: str) -> str:
        if self.llm_adapter is None:
            logger.warning(
                "Classifier has no LLM adapter; using default category=%s", DEFAULT_CATEGORY
            )
            return DEFAULT_CATEGORY
        try:
            raw = await self.llm_adapter.complete(
                system_prompt=build_classifier_prompt(),
                user_prompt=task_text,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Error classifying task; using default category. reason=%s", exc)
            return DEFAULT_CATEGORY

        category = (raw or "").strip().upper() or DEFAULT_CATEGORY
        logger.info("Task classified as: %s", category)
        return category
