"""Base agent class for GREIA AI agents.

Provides Gemini model access via ``infra.gemini_client``, a standard
``AgentResult`` return type and latency/token accounting.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class AgentResult:
    """Standard result type for agent calls.

    Agents return an AgentResult instead of raising. Callers check
    ``result.ok``; ``timed_out`` distinguishes a deadline miss from any
    other failure.
    """

    ok: bool
    data: Any = None
    error: Optional[str] = None
    tokens_used: int = 0
    latency_ms: int = 0
    timed_out: bool = False

    @classmethod
    def success(cls, data: Any, tokens_used: int = 0, latency_ms: int = 0) -> "AgentResult":
        return cls(ok=True, data=data, tokens_used=tokens_used, latency_ms=latency_ms)

    @classmethod
    def failure(cls, error: str, latency_ms: int = 0, timed_out: bool = False) -> "AgentResult":
        return cls(ok=False, error=error, latency_ms=latency_ms, timed_out=timed_out)


# ---------------------------------------------------------------------------
# Base agent
# ---------------------------------------------------------------------------

class BaseAgent:
    """Base class for Gemini-backed agents.

    Subclasses assemble their prompt and call ``generate_json``.
    """

    def __init__(
        self,
        agent_name: str,
        model_name: str = "gemini-3-flash-preview",
        temperature: float = 0.0,
        timeout_seconds: float = 30.0,
    ):
        self.agent_name = agent_name
        self.model_name = model_name
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds

    async def generate_json(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        response_schema: dict | None = None,
        model_name: Optional[str] = None,
    ) -> AgentResult:
        """Generate a JSON response from Gemini and parse it.

        Args:
            prompt: The user prompt to send.
            system_instruction: Optional system instruction.
            response_schema: Optional JSON Schema constraining the output.
            model_name: Per-call model override.

        Returns:
            An ``AgentResult`` whose ``data`` is the parsed JSON.
        """
        start_time = time.time()
        model_name = model_name or self.model_name
        try:
            from greia_platform.infra.gemini_client import get_model

            model = get_model(
                model_name=model_name,
                temperature=self.temperature,
                response_schema=response_schema,
                system_instruction=system_instruction,
            )
            response = await asyncio.wait_for(
                model.generate_content_async(prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            latency_ms = int((time.time() - start_time) * 1000)
            logger.warning(
                "[%s] %s timed out after %dms", self.agent_name, model_name, latency_ms
            )
            return AgentResult.failure(
                f"{model_name} timed out after {self.timeout_seconds:.0f}s",
                latency_ms=latency_ms,
                timed_out=True,
            )
        except Exception as exc:
            latency_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "[%s] Generation failed after %dms: %s", self.agent_name, latency_ms, exc
            )
            return AgentResult.failure(str(exc), latency_ms=latency_ms)

        latency_ms = int((time.time() - start_time) * 1000)
        tokens_used = 0
        usage = getattr(response, "usage_metadata", None)
        if usage:
            tokens_used = (getattr(usage, "prompt_token_count", 0) or 0) + (
                getattr(usage, "candidates_token_count", 0) or 0
            )

        try:
            parsed = json.loads(response.text)
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            logger.warning("[%s] JSON parse failed: %s", self.agent_name, exc)
            return AgentResult.failure(f"JSON parse error: {exc}", latency_ms=latency_ms)

        logger.info(
            "[%s] Generation succeeded: tokens=%d, latency=%dms",
            self.agent_name, tokens_used, latency_ms,
        )
        return AgentResult.success(parsed, tokens_used=tokens_used, latency_ms=latency_ms)
