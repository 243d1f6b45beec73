"""Fast secondary model used for routing and query rewriting.

These calls sit on the latency path of every routed request, so they go
to a small model (``ProviderConfig.auxiliary_model``) through LangChain
rather than through the per-model provider handlers.  Structured
decisions use ``with_structured_output`` against a pydantic schema.
"""

from __future__ import annotations

import logging
from typing import Optional, TypeVar

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)
from langchain_openai import AzureChatOpenAI, ChatOpenAI
from pydantic import BaseModel

from chatpipe.configs.system import ProviderConfig

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)


def build_auxiliary_llm(config: ProviderConfig) -> Optional[BaseChatModel]:
    """Create the auxiliary chat model, or ``None`` when no provider is set.

    Azure OpenAI is preferred when configured; the OpenAI-compatible
    endpoint is the fallback.
    """
    if config.azure_endpoint:
        return AzureChatOpenAI(
            azure_endpoint=config.azure_endpoint,
            api_key=config.azure_api_key,
            api_version=config.azure_api_version,
            azure_deployment=config.auxiliary_model,
            timeout=config.timeout.total_seconds(),
            max_retries=config.max_retries,
        )
    if config.openai_base_url:
        return ChatOpenAI(
            base_url=config.openai_base_url,
            api_key=config.openai_api_key,
            model=config.auxiliary_model,
            timeout=config.timeout.total_seconds(),
            max_retries=config.max_retries,
        )
    logger.warning("No provider configured for the auxiliary model")
    return None


class AuxiliaryModel:
    """Thin wrapper over a LangChain chat model for one-shot calls."""

    def __init__(self, llm: BaseChatModel) -> None:
        self._llm = llm

    async def decide(
        self,
        schema: type[SchemaT],
        system: str,
        conversation: list[tuple[str, str]],
    ) -> SchemaT:
        """Ask for a structured answer matching *schema*.

        *conversation* is a list of ``(role, text)`` pairs appended after
        the system instructions.
        """
        structured = self._llm.with_structured_output(schema)
        result = await structured.ainvoke(_to_messages(system, conversation))
        if not isinstance(result, schema):
            result = schema.model_validate(result)
        return result

    async def complete(
        self, system: str, user: str, temperature: Optional[float] = None
    ) -> str:
        llm = self._llm
        if temperature is not None:
            llm = llm.bind(temperature=temperature)
        message = await llm.ainvoke(
            [SystemMessage(content=system), HumanMessage(content=user)]
        )
        return str(message.content).strip()


def _to_messages(
    system: str, conversation: list[tuple[str, str]]
) -> list[BaseMessage]:
    messages: list[BaseMessage] = [SystemMessage(content=system)]
    for role, text in conversation:
        if role == "system":
            messages.append(SystemMessage(content=text))
        elif role == "assistant":
            messages.append(AIMessage(content=text))
        else:
            messages.append(HumanMessage(content=text))
    return messages
