"""
Agent Directory
Agent 目录

Agents are created by configuration. The directory holds their definitions
and lets the Orchestrator clone a role template into a dedicated agent for
one child task (`spawn`) and drop it afterwards (`retire`).

Definitions file (JSON):
    {
      "agents": [
        {"id": "researcher", "role": "research", "model": "...",
         "system_prompt": "...", "tools": ["lookup"]}
      ]
    }
"""

from __future__ import annotations
import json
import logging
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from .core.constants import DEFAULT_MODEL
from .errors import UnknownAgent
from .models import Agent

logger = logging.getLogger(__name__)


# ============================================
# Definition file schema
# ============================================

class AgentDefinition(BaseModel):
    """One agent entry in the definitions file"""
    id: str = Field(..., min_length=1)
    model: Optional[str] = None
    system_prompt: str = ""
    tools: List[str] = Field(default_factory=list)
    role: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, gt=0)

    def to_agent(self, default_model: str = DEFAULT_MODEL) -> Agent:
        return Agent(
            agent_id=self.id,
            model=self.model or default_model,
            system_prompt=self.system_prompt,
            tools=tuple(self.tools),
            role=self.role,
            max_tokens=self.max_tokens,
        )


class AgentDefinitionFile(BaseModel):
    agents: List[AgentDefinition] = Field(default_factory=list)


def load_agent_definitions(
    path: Union[str, Path],
    default_model: str = DEFAULT_MODEL,
) -> List[Agent]:
    """
    Load and validate agent definitions from a JSON file

    Raises:
        pydantic.ValidationError: Malformed entries
        ValueError: Duplicate agent ids
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, list):
        data = {"agents": data}

    definitions = AgentDefinitionFile.model_validate(data)

    seen = set()
    agents = []
    for definition in definitions.agents:
        if definition.id in seen:
            raise ValueError(f"Duplicate agent id in {path}: {definition.id}")
        seen.add(definition.id)
        agents.append(definition.to_agent(default_model))

    logger.info(f"Loaded {len(agents)} agent definition(s) from {path}")
    return agents


# ============================================
# Directory
# ============================================

class AgentDirectory:
    """
    Thread-safe agent lookup

    Role templates are the registered agents carrying a `role`; the first one
    registered for a role is its template.
    """

    def __init__(self, agents: Iterable[Agent] = ()):
        self._agents: Dict[str, Agent] = {}
        self._templates: Dict[str, str] = {}
        self._spawned: set = set()
        self._lock = Lock()

        for agent in agents:
            self.register(agent)

    def register(self, agent: Agent, *, replace: bool = False) -> Agent:
        with self._lock:
            if agent.agent_id in self._agents and not replace:
                raise ValueError(f"Agent already registered: {agent.agent_id}")
            self._agents[agent.agent_id] = agent
            if agent.role and agent.role not in self._templates:
                self._templates[agent.role] = agent.agent_id

        logger.debug(f"Agent registered: {agent.agent_id} (role={agent.role})")
        return agent

    def get(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise UnknownAgent(agent_id)
        return agent

    def template(self, role: str) -> Agent:
        """The role template agent"""
        agent_id = self._templates.get(role)
        if agent_id is None:
            raise UnknownAgent(f"role:{role}")
        return self._agents[agent_id]

    def has_role(self, role: str) -> bool:
        return role in self._templates

    def spawn(self, role: str, agent_id: str) -> Agent:
        """Clone the role template into a dedicated agent"""
        agent = self.template(role).with_id(agent_id)
        with self._lock:
            if agent_id in self._agents:
                raise ValueError(f"Agent already registered: {agent_id}")
            self._agents[agent_id] = agent
            self._spawned.add(agent_id)

        logger.debug(f"Agent spawned: {agent_id} from role {role}")
        return agent

    def retire(self, agent_id: str) -> None:
        """Remove a spawned agent; configured agents stay"""
        with self._lock:
            if agent_id not in self._spawned:
                return
            self._spawned.discard(agent_id)
            self._agents.pop(agent_id, None)

        logger.debug(f"Agent retired: {agent_id}")

    def list_agents(self) -> List[Agent]:
        return list(self._agents.values())

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)
