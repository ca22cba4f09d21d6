import os
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from src.contracts.rag_search_v1 import Identity
from src.core.config import config
from src.orchestrators.rag.pipeline import RAGPipeline, create_pipeline


@pytest_asyncio.fixture
async def pipeline() -> AsyncIterator[RAGPipeline]:
    """Real pipeline fixture for e2e/integration suites only."""
    instance = create_pipeline()
    try:
        yield instance
    finally:
        await instance.close()


@pytest.fixture
def identity() -> Identity:
    user_id = os.getenv("RAG_USER_ID") or config.default_user_id
    if not user_id:
        pytest.skip("RAG_USER_ID is required for e2e searches")
    return Identity(user_id=user_id, currency=config.default_currency)
