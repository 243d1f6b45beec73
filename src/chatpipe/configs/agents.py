"""Organization (knowledge-base) agent declarations.

Agents are declared under the ``agents`` key of the app config::

    agents:
      - id: msf_communications
        name: MSF Communications
        type: rag
        system_prompt: "You answer questions about ..."
        allow_web_search: false
        rag_config:
          search_index: comms-index
          semantic_config: comms-semantic
          top_k: 10
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class AgentRagConfig(BaseModel):
    """Search parameters for one knowledge base."""

    search_index: str = Field(..., description="Index holding the agent's chunks")
    semantic_config: str = Field(default="default")
    top_k: int = Field(default=10, ge=1, le=50)
    search_endpoint: Optional[str] = Field(
        default=None, description="Overrides the global search endpoint"
    )


class OrganizationAgent(BaseModel):
    """A bot the user can pick by ``bot_id``."""

    id: str
    name: str = ""
    description: str = ""
    type: Literal["rag", "foundry"] = "rag"
    enabled: bool = True
    system_prompt: str = ""
    allow_web_search: bool = False
    agent_id: Optional[str] = None
    rag_config: Optional[AgentRagConfig] = None


def find_organization_agent(
    agents: list[OrganizationAgent], agent_id: Optional[str]
) -> Optional[OrganizationAgent]:
    """Return the enabled agent with *agent_id*, or ``None``."""
    if not agent_id:
        return None
    for agent in agents:
        if agent.id == agent_id and agent.enabled:
            return agent
    return None
