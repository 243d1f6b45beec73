"""Knowledge-base retrieval for organization agents.

Retrieval runs in four steps:

    reformulate -> hybrid search (over-fetch) -> dedupe / diversify -> rank

Reformulation rewrites relative time expressions ("this week") into the
concrete month and year so vector search can match dated documents.
Ranking blends the normalized semantic reranker score with a linear
recency decay; very old results are dropped unless they are strongly
relevant.

``retrieve`` is used by the RAG enricher and never leaves partial state
behind: it either returns a complete ``Retrieval`` or raises.
``augment_messages`` is the older self-contained completion path that
searches, prompts and calls the model in one go.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Union

from chatpipe.configs.agents import AgentRagConfig, OrganizationAgent
from chatpipe.configs.models import ModelConfig
from chatpipe.configs.system import RagConfig
from chatpipe.core.metrics import RAG_RESULTS_RETURNED, RAG_SEARCH_LATENCY_SECONDS
from chatpipe.core.pipeline.context import ChatUser, Message
from chatpipe.core.providers.base import Completion
from chatpipe.core.providers.factory import ProviderClients, create_model_handler
from chatpipe.core.stream.metadata import Citation, deduplicate_citations
from chatpipe.core.stream.processor import process_chat_stream
from chatpipe.core.stream.renumber import SequentialCitationRenumberer
from chatpipe.infra.logging import sanitize_for_log

from .auxiliary import AuxiliaryModel
from .search import SearchClient, SearchDocument

logger = logging.getLogger(__name__)

REFORMULATION_TEMPERATURE = 0.2
COMPLETION_TEMPERATURE = 0.5
HISTORY_WINDOW = 5
# Semantic reranker scores range 0..4
RERANKER_SCORE_MAX = 4.0


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _month_name(d: date) -> str:
    return d.strftime("%B")


def reformulation_prompt(today: date) -> str:
    month, year = _month_name(today), today.year
    first = today.replace(day=1)
    last_month = (
        first.replace(year=first.year - 1, month=12)
        if first.month == 1
        else first.replace(month=first.month - 1)
    )
    return (
        "You are a search query optimizer for Azure AI Search. "
        f"Today is {month} {today.day}, {year}.\n\n"
        "Your task is to create concise, effective search queries that:\n"
        "1. CONVERT temporal references to ACTUAL dates/months (this is critical "
        "for vector search)\n"
        "2. Include key entities and concepts from the original query\n"
        "3. Work effectively with Azure AI Search semantic ranking\n\n"
        "CRITICAL - TEMPORAL CONVERSION RULES:\n"
        f'- "this week" / "recent" / "latest" / "current" -> "{month} {year}"\n'
        f'- "last week" / "last month" -> "{_month_name(last_month)} '
        f'{last_month.year}" or "{month} {year}"\n'
        f'- "today" / "now" -> "{month} {today.day} {year}"\n'
        f'- "this year" -> "{year}"\n'
        '- Keep historical queries unchanged (e.g., "2023 earthquake" stays as-is)\n\n'
        "GUIDELINES FOR AZURE AI SEARCH:\n"
        "- Keep queries CONCISE (under 20 words)\n"
        "- Focus on CORE CONCEPTS and ENTITIES\n"
        "- Use NATURAL LANGUAGE phrasing\n"
        "- ALWAYS include the actual month/year when recency is implied\n"
        "- Avoid complex boolean operators or syntax\n\n"
        "EXAMPLES:\n"
        f'- "what did MSF say about Pakistan this week" -> "MSF Pakistan {month} {year}"\n'
        f'- "latest news on Gaza" -> "Gaza humanitarian crisis {month} {year}"\n'
        '- "MSF response to 2023 earthquake" -> "MSF 2023 earthquake response"\n\n'
        "Return ONLY the reformulated search query with no additional text."
    )


CITATION_RULES = """CRITICAL CITATION RULES - YOU MUST FOLLOW THESE:
- Cite sources inline using [#] notation immediately after the relevant information
- Use SEPARATE brackets for each source like [1][2][3] - NEVER group them like [1,2,3]
- NEVER include a "Sources:", "References:", or similar section listing sources
- NEVER list sources at the end of your response - the frontend handles this automatically
- Only use citation numbers that exist in the provided sources (e.g., [1], [2])

Example of CORRECT formatting:
"The outbreak affected thousands of people [1][2]. Vaccination rates remain low [3]."

Example of WRONG formatting (DO NOT DO THIS):
"The outbreak affected thousands of people [1,2]."

The frontend automatically shows source information. Just cite inline and end your response naturally."""


def _flatten(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content
    return message.text()


def extract_query(messages: list[Message]) -> str:
    """Text of the last user message."""
    for message in reversed(messages):
        if message.role == "user":
            return _flatten(message)
    return ""


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def parse_doc_date(value: str) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def format_doc_date(value: str) -> str:
    parsed = parse_doc_date(value)
    return parsed.isoformat() if parsed else value


@dataclass(frozen=True)
class ScoredDocument:
    document: SearchDocument
    relevance: float
    recency: float
    score: float
    age_days: Optional[int]


def normalized_relevance(doc: SearchDocument) -> float:
    if doc.reranker_score:
        return max(0.0, min(1.0, doc.reranker_score / RERANKER_SCORE_MAX))
    return max(0.0, min(1.0, doc.score))


def score_document(doc: SearchDocument, config: RagConfig, today: date) -> ScoredDocument:
    relevance = normalized_relevance(doc)
    doc_date = parse_doc_date(doc.date)
    if doc_date is None:
        age_days, recency = None, 0.0
    else:
        age_days = max(0, (today - doc_date).days)
        recency = max(0.0, 1.0 - age_days / config.recency_window_days)
    score = config.relevance_weight * relevance + config.recency_weight * recency
    return ScoredDocument(doc, relevance, recency, score, age_days)


def diversify(docs: list[SearchDocument], max_per_source: int) -> list[SearchDocument]:
    """Drop duplicate chunk ids and cap the chunks taken from one url."""
    seen_chunks: set[str] = set()
    per_url: dict[str, int] = {}
    result: list[SearchDocument] = []
    for doc in docs:
        if doc.chunk_id and doc.chunk_id in seen_chunks:
            continue
        count = per_url.get(doc.url, 0)
        if count >= max_per_source:
            continue
        if doc.chunk_id:
            seen_chunks.add(doc.chunk_id)
        per_url[doc.url] = count + 1
        result.append(doc)
    return result


def rank_documents(
    docs: list[SearchDocument],
    config: RagConfig,
    top_k: int,
    today: Optional[date] = None,
) -> list[SearchDocument]:
    """Order by blended score, dropping stale low-relevance results."""
    today = today or datetime.now(timezone.utc).date()
    scored = []
    for doc in docs:
        item = score_document(doc, config, today)
        if (
            item.age_days is not None
            and item.age_days > config.stale_cutoff_days
            and item.relevance < config.stale_min_relevance
        ):
            logger.debug("Dropping stale result %s", sanitize_for_log(doc.title))
            continue
        scored.append(item)
    # sorted() is stable, so ties keep the search service's order
    scored = sorted(scored, key=lambda s: s.score, reverse=True)
    return [s.document for s in scored[:top_k]]


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_sources(docs: list[SearchDocument], start: int = 1) -> str:
    return "\n\n".join(
        f"Source {number}:\nTitle: {doc.title}\nDate: {format_doc_date(doc.date)}\n"
        f"URL: {doc.url}\nContent: {doc.chunk}"
        for number, doc in enumerate(docs, start=start)
    )


def build_citations(docs: list[SearchDocument], start: int = 1) -> list[Citation]:
    return [
        Citation(number=number, title=doc.title, url=doc.url, date=format_doc_date(doc.date))
        for number, doc in enumerate(docs, start=start)
    ]


@dataclass(frozen=True)
class DateRange:
    oldest: Optional[str] = None
    newest: Optional[str] = None


def date_range(docs: list[SearchDocument]) -> DateRange:
    dates = sorted(d for d in (parse_doc_date(doc.date) for doc in docs) if d)
    if not dates:
        return DateRange()
    return DateRange(oldest=dates[0].isoformat(), newest=dates[-1].isoformat())


@dataclass(frozen=True)
class Retrieval:
    query: str
    documents: list[SearchDocument]
    citations: list[Citation]
    dates: DateRange


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class RAGService:
    def __init__(
        self,
        search: SearchClient,
        auxiliary: Optional[AuxiliaryModel],
        config: RagConfig,
        clients: Optional[ProviderClients] = None,
    ) -> None:
        self._search = search
        self._auxiliary = auxiliary
        self._config = config
        self._clients = clients or ProviderClients()

    async def reformulate_query(
        self, messages: list[Message], today: Optional[date] = None
    ) -> str:
        """Rewrite the last user turn into a search query.

        Falls back to the raw user text when no auxiliary model is
        configured or the call fails.
        """
        original = extract_query(messages)
        if self._auxiliary is None:
            return original

        history = "\n".join(
            f"{m.role}: {_flatten(m)}" for m in messages[-HISTORY_WINDOW:]
        )
        user = (
            f"Conversation history:\n{history}\n\n"
            f"Original query: {original}\n\n"
            "Generate an improved Azure AI Search query that captures the key "
            "concepts and appropriately handles recency."
        )
        try:
            rewritten = await self._auxiliary.complete(
                reformulation_prompt(today or datetime.now(timezone.utc).date()),
                user,
                temperature=REFORMULATION_TEMPERATURE,
            )
        except Exception as e:
            logger.warning("Query reformulation failed, using raw query: %s", e)
            return original

        rewritten = rewritten or original
        logger.debug(
            "Reformulated %r -> %r",
            sanitize_for_log(original),
            sanitize_for_log(rewritten),
        )
        return rewritten

    def _top_k(self, agent_config: Optional[AgentRagConfig]) -> int:
        return agent_config.top_k if agent_config else self._config.top_k

    async def retrieve(
        self, messages: list[Message], agent: OrganizationAgent
    ) -> Retrieval:
        started = time.perf_counter()
        query = await self.reformulate_query(messages)
        rag = agent.rag_config
        top_k = self._top_k(rag)

        candidates = await self._search.hybrid_search(
            query,
            top=top_k * self._config.overfetch_factor,
            index=rag.search_index if rag else None,
            semantic_config=rag.semantic_config if rag else None,
            endpoint=rag.search_endpoint if rag else None,
        )
        diverse = diversify(candidates, self._config.max_chunks_per_source)
        ranked = rank_documents(diverse, self._config, top_k)

        RAG_SEARCH_LATENCY_SECONDS.observe(time.perf_counter() - started)
        RAG_RESULTS_RETURNED.observe(len(ranked))
        logger.info(
            "RAG search for agent %s: %d candidate(s) -> %d source(s)",
            agent.id,
            len(candidates),
            len(ranked),
        )
        return Retrieval(
            query=query,
            documents=ranked,
            citations=build_citations(ranked),
            dates=date_range(ranked),
        )

    # ------------------------------------------------------------------
    # Self-contained completion path
    # ------------------------------------------------------------------

    @staticmethod
    def completion_messages(
        messages: list[Message], docs: list[SearchDocument]
    ) -> list[Message]:
        query = extract_query(messages)
        previous_questions = [
            f'"{_flatten(m)}"' for m in messages[:-1] if m.role == "user"
        ]
        note = ""
        if previous_questions:
            note = (
                "\n\nNote: This is a follow-up question in an ongoing conversation. "
                f"Previous questions include: {', '.join(previous_questions)}. "
                "The search query has been reformulated to capture the full "
                "context of the conversation."
            )
        prior = [Message(role=m.role, content=_flatten(m)) for m in messages[:-1]]
        return [
            *prior,
            Message(
                role="user",
                content=(
                    f"Available sources:\n\n{format_sources(docs)}"
                    f"{note}\n\nQuestion: {query}"
                ),
            ),
        ]

    async def augment_messages(
        self,
        messages: list[Message],
        agent: OrganizationAgent,
        model: ModelConfig,
        user: ChatUser,
        stream: bool = False,
    ) -> Union[AsyncIterator[str], str]:
        """Search, then answer with the agent's prompt and numbered sources.

        Unlike ``retrieve`` callers, this path lets failures propagate.
        """
        started = time.perf_counter()
        retrieval = await self.retrieve(messages, agent)
        sources = {c.number: c for c in retrieval.citations}
        renumberer = SequentialCitationRenumberer(sources)

        handler = create_model_handler(model, self._clients)
        system_prompt = f"{agent.system_prompt}\n\n{CITATION_RULES}".strip()
        params = handler.build_request_params(
            model.model_id_for_request,
            handler.prepare_messages(
                self.completion_messages(messages, retrieval.documents),
                system_prompt,
                model,
            ),
            COMPLETION_TEMPERATURE,
            user,
            stream,
            model,
        )
        result = await handler.execute_request(params)
        logger.info(
            "RAG completion for agent %s started in %.1fms (stream=%s)",
            agent.id,
            (time.perf_counter() - started) * 1000,
            stream,
        )

        if not isinstance(result, Completion):
            return process_chat_stream(result, renumberer=renumberer)

        text = renumberer.process_content(result.text)
        used = deduplicate_citations(renumberer.citations(), renumber=False)
        footer = (
            "\n\nSources used: "
            + ", ".join(f"[{c.number}] {c.title}" for c in used)
            + f"\nDate range: {retrieval.dates.oldest or 'N/A'} to "
            f"{retrieval.dates.newest or 'N/A'}"
            + f"\nTotal sources: {len(used)}"
        )
        return text + footer
