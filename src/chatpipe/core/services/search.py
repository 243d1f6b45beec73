"""Azure AI Search client for hybrid (vector + semantic) queries.

Talks to the REST API with ``httpx`` so outbound calls show up in the
httpx auto-instrumentation spans.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from chatpipe.configs.system import SearchConfig
from chatpipe.infra.telemetry import (
    ATTR_RAG_QUERY_LEN,
    ATTR_RAG_RESULT_COUNT,
    ATTR_RAG_TOP_K,
    SPAN_RAG_SEARCH,
    tracer,
)

logger = logging.getLogger(__name__)

SELECT_FIELDS = ("chunk", "title", "date", "url", "chunk_id")


class SearchDocument(BaseModel):
    """One retrieved chunk."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chunk: str = ""
    title: str = ""
    date: str = ""
    url: str = ""
    chunk_id: str = ""
    reranker_score: float = Field(default=0.0, alias="@search.rerankerScore")
    score: float = Field(default=0.0, alias="@search.score")


class SearchError(Exception):
    """The search service returned an error or was unreachable."""


class SearchClient:
    def __init__(self, config: SearchConfig) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            timeout=config.timeout.total_seconds(),
            headers={"api-key": config.api_key, "Content-Type": "application/json"},
        )

    @property
    def configured(self) -> bool:
        return bool(self._config.endpoint and self._config.api_key)

    async def hybrid_search(
        self,
        query: str,
        top: int,
        index: Optional[str] = None,
        semantic_config: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> list[SearchDocument]:
        index = index or self._config.index
        base = (endpoint or self._config.endpoint).rstrip("/")
        url = f"{base}/indexes/{index}/docs/search"
        body = {
            "search": query,
            "select": ",".join(SELECT_FIELDS),
            "top": top,
            "queryType": "semantic",
            "semanticConfiguration": semantic_config or self._config.semantic_config,
            "captions": "extractive",
            "answers": "extractive|count-3",
            "vectorQueries": [
                {
                    "kind": "text",
                    "text": query,
                    "fields": self._config.vector_field,
                    "k": top,
                }
            ],
        }

        with tracer.start_as_current_span(SPAN_RAG_SEARCH) as span:
            span.set_attribute(ATTR_RAG_QUERY_LEN, len(query))
            span.set_attribute(ATTR_RAG_TOP_K, top)
            try:
                response = await self._client.post(
                    url,
                    params={"api-version": self._config.api_version},
                    json=body,
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise SearchError(f"Search request to index {index} failed: {e}") from e

            docs = [
                SearchDocument.model_validate(item)
                for item in response.json().get("value", [])
            ]
            span.set_attribute(ATTR_RAG_RESULT_COUNT, len(docs))

        logger.debug("Search on %s returned %d result(s)", index, len(docs))
        return docs

    async def aclose(self) -> None:
        await self._client.aclose()
