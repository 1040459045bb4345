"""Eval fixtures.

These fixtures call the real model providers. Run with ``--run-evals`` and
an ``OPENAI_API_KEY`` in the environment.
"""

import pytest

from app.ai.client import AIClient
from app.config import get_settings
from app.services.evaluators import EvaluatorRegistry, build_default_registry


@pytest.fixture
def live_ai_client() -> AIClient:
    """AI client configured from settings, skipping when no key is set."""
    settings = get_settings()
    if not settings.openai_api_key:
        pytest.skip("OPENAI_API_KEY not set")
    return AIClient(openai_api_key=settings.openai_api_key)


@pytest.fixture
def live_registry(live_ai_client) -> EvaluatorRegistry:
    return build_default_registry(live_ai_client)
