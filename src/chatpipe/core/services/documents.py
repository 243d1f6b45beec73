"""Document text extraction and map-reduce summarization.

Large documents do not fit in the chat model's context, so they are
split into chunks sized from the target model's window, each chunk is
summarized against the user's question, and the concatenated chunk
summaries are condensed into one query-focused summary.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from openai import AsyncOpenAI

from chatpipe.configs.models import ModelConfig, ModelSDK
from chatpipe.core.pipeline.context import ChatUser
from chatpipe.infra.logging import sanitize_for_log
from chatpipe.infra.text_extract import (
    PYMUPDF_EXTENSIONS,
    decode_text,
    extract_text_from_pdf,
)
from chatpipe.infra.tokens import CHARS_PER_TOKEN_LATIN, estimate_chars_per_token

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Chunk budget
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_CHARS = 50_000
DEFAULT_BATCH_SIZE = 3
DEFAULT_MAX_COMPLETION_TOKENS = 5_000
DEFAULT_SUMMARY_LENGTH = 16_000

MIN_CHUNK_CHARS = 8_000
MAX_CHUNK_CHARS = 400_000
MIN_BATCH_SIZE = 3
MAX_BATCH_SIZE = 10
MIN_SUMMARY_LENGTH = 16_000
MAX_SUMMARY_LENGTH = 64_000

PROMPT_OVERHEAD_TOKENS = 300
SUMMARY_TEMPERATURE = 0.1


@dataclass(frozen=True)
class ChunkConfig:
    chunk_size: int
    batch_size: int
    max_completion_tokens: int
    max_summary_length: int


def _clamp(value: float, low: int, high: int) -> int:
    return int(max(low, min(high, value)))


def calculate_chunk_config(
    model: Optional[ModelConfig],
    chars_per_token: float = CHARS_PER_TOKEN_LATIN,
) -> ChunkConfig:
    """Size chunks so one chunk plus its prompt fills the model's window."""
    if model is None:
        return ChunkConfig(
            chunk_size=DEFAULT_CHUNK_CHARS,
            batch_size=DEFAULT_BATCH_SIZE,
            max_completion_tokens=DEFAULT_MAX_COMPLETION_TOKENS,
            max_summary_length=DEFAULT_SUMMARY_LENGTH,
        )

    max_completion_tokens = min(DEFAULT_MAX_COMPLETION_TOKENS, model.token_limit // 4)
    available = model.max_length - max_completion_tokens - PROMPT_OVERHEAD_TOKENS
    return ChunkConfig(
        chunk_size=_clamp(available * chars_per_token, MIN_CHUNK_CHARS, MAX_CHUNK_CHARS),
        batch_size=_clamp(model.max_length // 50_000, MIN_BATCH_SIZE, MAX_BATCH_SIZE),
        max_completion_tokens=max_completion_tokens,
        max_summary_length=_clamp(
            model.token_limit * 2, MIN_SUMMARY_LENGTH, MAX_SUMMARY_LENGTH
        ),
    )


def inline_budget(text: str, model: Optional[ModelConfig]) -> int:
    """Largest extracted length that is attached verbatim instead of summarized."""
    return calculate_chunk_config(model, estimate_chars_per_token(text)).chunk_size


def split_into_chunks(text: str, chunk_size: int = DEFAULT_CHUNK_CHARS) -> list[str]:
    return [text[i : i + chunk_size] for i in range(0, len(text), chunk_size)]


def load_document(data: bytes, filename: str) -> str:
    """Extract plain text from *data* based on the file extension."""
    suffix = Path(filename.lower()).suffix
    if suffix in PYMUPDF_EXTENSIONS:
        return extract_text_from_pdf(data, filetype=suffix.lstrip("."))
    return decode_text(data)


# ---------------------------------------------------------------------------
# Summarization
# ---------------------------------------------------------------------------

CHUNK_SYSTEM_PROMPT = (
    "You are an AI Text summarizer. You take the prompt of a user and rather "
    "than conclusively answering, you pull together all the relevant "
    "information for that prompt in a particular chunk of text and reshape "
    "that into brief statements capturing the nuanced intent of the original "
    "text."
)

FINAL_SYSTEM_PROMPT = (
    "You are a document content extractor. Your job is to produce a clear, "
    "comprehensive summary of document content relevant to the user's query. "
    "Preserve key details, numbers, names, and structure. Do NOT answer the "
    "user's query; the summary you produce will be passed to another AI that "
    "will answer it."
)


def _chunk_prompt(query: str, chunk: str) -> str:
    return (
        "Summarize the following text with relevance to the prompt, but keep "
        "enough details to maintain the tone, character, and content of the "
        "original. If nothing is relevant, then return an empty string:\n\n"
        f"```prompt\n{query}```\n\n```text\n{chunk}\n```"
    )


def _final_prompt(combined: str, query: str) -> str:
    return (
        f'{combined}\n\nThe user\'s query is: "{query}"\n\n'
        "Produce a comprehensive summary of the document content that is "
        "relevant to the user's query. Include key details, data, and context. "
        "Do NOT answer the query directly; just extract and organize the "
        "relevant content."
    )


class EmptySummaryError(Exception):
    """The final summarization call returned no text."""


class DocumentSummarizer:
    """Query-focused summarization over an OpenAI-protocol client.

    Chunk calls in one batch run concurrently; batches run one after the
    other so a large document never floods the rate-limited endpoint.
    """

    def __init__(self, client: AsyncOpenAI, fallback_model_id: str) -> None:
        self._client = client
        self._fallback_model_id = fallback_model_id

    async def parse_and_query_file(
        self,
        text: str,
        query: str,
        model: Optional[ModelConfig],
        user: ChatUser,
    ) -> str:
        config = calculate_chunk_config(model, estimate_chars_per_token(text))
        chunks = split_into_chunks(text, config.chunk_size)
        logger.info(
            "Summarizing %d chars in %d chunk(s) of %d",
            len(text),
            len(chunks),
            config.chunk_size,
        )

        combined = ""
        processed = 0
        for start in range(0, len(chunks), config.batch_size):
            batch = chunks[start : start + config.batch_size]
            summaries = await asyncio.gather(
                *(self._summarize_chunk(query, c, model, user, config) for c in batch)
            )
            valid = [s for s in summaries if s is not None]
            processed += len(valid)

            batch_summary = ""
            for summary in valid:
                if len(batch_summary + summary) > config.max_summary_length:
                    break
                batch_summary += summary + " "
            combined += batch_summary

        logger.info(
            "Chunk summaries done: %d/%d chunks, %d chars combined",
            processed,
            len(chunks),
            len(combined),
        )

        response = await self._client.chat.completions.create(
            **self._params(model, user, config),
            messages=[
                {"role": "system", "content": FINAL_SYSTEM_PROMPT},
                {"role": "user", "content": _final_prompt(combined, query)},
            ],
        )
        result = (response.choices[0].message.content or "").strip()
        if not result:
            raise EmptySummaryError("Empty response returned from summarization")
        return result

    async def _summarize_chunk(
        self,
        query: str,
        chunk: str,
        model: Optional[ModelConfig],
        user: ChatUser,
        config: ChunkConfig,
    ) -> Optional[str]:
        try:
            response = await self._client.chat.completions.create(
                **self._params(model, user, config),
                messages=[
                    {"role": "system", "content": CHUNK_SYSTEM_PROMPT},
                    {"role": "user", "content": _chunk_prompt(query, chunk)},
                ],
            )
        except Exception as e:
            logger.warning("Chunk summarization failed, skipping: %s", e)
            return None
        return (response.choices[0].message.content or "").strip()

    def _params(
        self, model: Optional[ModelConfig], user: ChatUser, config: ChunkConfig
    ) -> dict:
        if model is not None and model.sdk is ModelSDK.AZURE_OPENAI:
            model_id = model.model_id_for_request
        else:
            model_id = self._fallback_model_id
            logger.debug(
                "Summarizing with %s instead of %s",
                model_id,
                sanitize_for_log(model.id if model else None),
            )
        params = {
            "model": model_id,
            "max_completion_tokens": config.max_completion_tokens,
            "stream": False,
            "user": json.dumps(user.model_dump(exclude_none=True)),
        }
        if model is None or model.supports_temperature is not False:
            params["temperature"] = SUMMARY_TEMPERATURE
        return params
