from __future__ import annotations

import threading
from typing import Any, Iterable, Optional

from flowkernel.config import WebSearchProvider, get_settings, reset_settings_cache
from flowkernel.logging import get_logger
from flowkernel.service.llm import (
    CompletionService,
    OpenAICompatibleCompletionService,
    StubCompletionService,
)
from flowkernel.service.rag import Document, InMemoryRetrievalService
from flowkernel.service.sandbox import SafeExpressionEvaluator
from flowkernel.service.web_search import (
    BraveSearchService,
    StubWebSearchService,
    WebSearchService,
)
from flowkernel.service.workflow import WorkflowEngine

logger = get_logger(__name__)


class Runtime:
    """Holds the settings and shared collaborators for the FastAPI app.

    Collaborators are shared; every run gets its own ``WorkflowEngine`` so
    concurrent requests never share a context.
    """

    def __init__(self, documents: Optional[Iterable[Document | dict]] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            web_search_provider=self.settings.web_search_provider.value,
        )
        self.completion = self._build_completion()
        self.retrieval = InMemoryRetrievalService(documents)
        self.web_search = self._build_web_search()
        self.evaluator = SafeExpressionEvaluator()
        logger.info(
            "runtime_init_completed",
            completion=type(self.completion).__name__,
            web_search=type(self.web_search).__name__,
        )

    def _build_completion(self) -> CompletionService:
        if self.settings.test_mode or not self.settings.completion_api_key:
            if not self.settings.test_mode:
                logger.warning("completion_api_key_missing", fallback="stub")
            return StubCompletionService()
        return OpenAICompatibleCompletionService(
            api_key=self.settings.completion_api_key,
            base_url=self.settings.completion_base_url,
            timeout=self.settings.completion_timeout,
        )

    def _build_web_search(self) -> WebSearchService:
        if (
            self.settings.test_mode
            or self.settings.web_search_provider is WebSearchProvider.STUB
        ):
            return StubWebSearchService()
        return BraveSearchService(
            api_key=self.settings.web_search_api_key,
            base_url=self.settings.web_search_base_url,
            timeout=self.settings.web_search_timeout,
        )

    def new_engine(self) -> WorkflowEngine:
        return WorkflowEngine(
            settings=self.settings,
            completion=self.completion,
            retrieval=self.retrieval,
            web_search=self.web_search,
            evaluator=self.evaluator,
        )

    async def aclose(self) -> None:
        for collaborator in (self.completion, self.web_search):
            closer: Any = getattr(collaborator, "aclose", None)
            if closer is not None:
                await closer()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
