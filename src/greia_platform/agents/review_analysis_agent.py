"""Review Analysis Agent - scores review text for the moderation gate."""

import logging
from typing import Optional, Protocol

from greia_platform.agents.base import BaseAgent
from greia_platform.agents.prompts.review_analysis import (
    REVIEW_ANALYSIS_SYSTEM_PROMPT,
    build_review_prompt,
)
from greia_platform.app.config import get_settings
from greia_platform.domain.errors import ClassifierError
from greia_platform.domain.schemas import ClassifierScores, ReviewAnalysisResponse

logger = logging.getLogger(__name__)

REVIEW_ANALYSIS_SCHEMA = ReviewAnalysisResponse.model_json_schema()


class ContentClassifier(Protocol):
    async def classify(
        self, title: str, content: str, model: Optional[str] = None
    ) -> ClassifierScores: ...


class ReviewAnalysisAgent(BaseAgent):
    """ContentClassifier backed by Gemini structured output.

    Unlike most agents this one raises: a failed or timed-out analysis must
    never read as a clean review.
    """

    def __init__(self):
        settings = get_settings()
        super().__init__(
            agent_name="review_analysis",
            model_name=settings.moderation_model,
            temperature=0.0,
            timeout_seconds=settings.classifier_timeout_seconds,
        )

    async def classify(
        self, title: str, content: str, model: Optional[str] = None
    ) -> ClassifierScores:
        result = await self.generate_json(
            prompt=build_review_prompt(title, content),
            system_instruction=REVIEW_ANALYSIS_SYSTEM_PROMPT,
            response_schema=REVIEW_ANALYSIS_SCHEMA,
            model_name=model,
        )
        if not result.ok:
            raise ClassifierError(result.error or "analysis failed", timeout=result.timed_out)

        try:
            analysis = ReviewAnalysisResponse.model_validate(result.data)
        except Exception as exc:
            logger.warning("[review_analysis] Response failed validation: %s", exc)
            raise ClassifierError(f"invalid analysis: {exc}")

        return ClassifierScores(
            toxicity=analysis.toxicity,
            spam_probability=analysis.spam_probability,
            fake_probability=analysis.fake_probability,
            content_flags=analysis.content_flags.model_dump(),
            sentiment=analysis.sentiment,
            keywords=analysis.keywords,
            language=analysis.language,
        )


def get_content_classifier() -> ContentClassifier:
    """FastAPI dependency: a Gemini-backed classifier."""
    return ReviewAnalysisAgent()
