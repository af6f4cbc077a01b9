"""
Task Decomposition
任务拆解

Turns a root objective into child subtask specs.

- StaticDecomposer: caller-provided subtasks
- ModelDecomposer: one planning call through the Model Stream Client. The
  model answers by calling the `create_subtasks` tool; the tool is declared
  but never executed, its input is the plan. Plans are validated with
  pydantic, anything invalid yields zero subtasks.
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from ..errors import ConductorError
from ..models import Agent, Message, Role
from ..providers.base import ModelStreamClient
from .constants import DEFAULT_MODEL, MAX_OUTPUT_TOKENS
from .events import StreamError, ToolInvocation

logger = logging.getLogger(__name__)


@dataclass
class SubtaskSpec:
    """
    One child of a task tree

    Bound to an explicit agent id, or to a role whose template is cloned into
    a dedicated agent for this child.
    """
    objective: str
    agent_id: Optional[str] = None
    role: Optional[str] = None

    def __post_init__(self):
        if not self.objective or not self.objective.strip():
            raise ValueError("Subtask objective must not be empty")
        if not self.agent_id and not self.role:
            raise ValueError("Subtask needs an agent_id or a role")


class Decomposer(ABC):
    """Objective -> subtask specs"""

    @abstractmethod
    async def decompose(self, objective: str, agent: Optional[Agent] = None) -> List[SubtaskSpec]:
        ...


class StaticDecomposer(Decomposer):
    """Always returns the configured subtasks"""

    def __init__(self, subtasks: Sequence[SubtaskSpec] = ()):
        self.subtasks = list(subtasks)

    async def decompose(self, objective: str, agent: Optional[Agent] = None) -> List[SubtaskSpec]:
        return list(self.subtasks)


# ============================================
# Model-driven planning
# ============================================

class PlannedSubtask(BaseModel):
    objective: str = Field(..., min_length=1)
    role: Optional[str] = None
    agent_id: Optional[str] = None


class SubtaskPlan(BaseModel):
    subtasks: List[PlannedSubtask] = Field(default_factory=list)


CREATE_SUBTASKS_TOOL: Dict[str, Any] = {
    "name": "create_subtasks",
    "description": (
        "Split the objective into independent subtasks. Each subtask is "
        "handled by one agent, chosen by role."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "subtasks": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "objective": {"type": "string"},
                        "role": {"type": "string"},
                    },
                    "required": ["objective", "role"],
                },
            },
        },
        "required": ["subtasks"],
    },
}


PLANNER_PROMPT = """You coordinate a team of agents.
Break the user's objective into independent subtasks that can run in parallel
and call the create_subtasks tool exactly once. If the objective is small
enough for a single agent, call it with an empty list.

Available roles: {roles}"""


class ModelDecomposer(Decomposer):
    """
    Plans subtasks with one model call

    Example:
        decomposer = ModelDecomposer(client, roles=["research", "writer"])
        specs = await decomposer.decompose("Compare three databases")
    """

    def __init__(
        self,
        client: ModelStreamClient,
        roles: Sequence[str] = (),
        model: str = DEFAULT_MODEL,
        max_subtasks: Optional[int] = None,
    ):
        self.client = client
        self.roles = list(roles)
        self.model = model
        self.max_subtasks = max_subtasks

    async def decompose(self, objective: str, agent: Optional[Agent] = None) -> List[SubtaskSpec]:
        model = agent.model if agent else self.model
        prompt = PLANNER_PROMPT.format(roles=", ".join(self.roles) or "(none)")
        request = [Message(agent_id=agent.agent_id if agent else "planner", role=Role.USER, content=objective)]

        plan_input: Optional[Dict[str, Any]] = None
        try:
            async for event in self.client.stream_message(
                model, prompt, request, [CREATE_SUBTASKS_TOOL], max_tokens=MAX_OUTPUT_TOKENS,
            ):
                if isinstance(event, ToolInvocation) and event.name == CREATE_SUBTASKS_TOOL["name"]:
                    plan_input = event.input
                elif isinstance(event, StreamError):
                    logger.warning(f"Planning call failed ({event.kind.value}): {event.detail}")
                    return []
        except ConductorError as e:
            logger.warning(f"Planning call failed: {e}")
            return []

        if plan_input is None:
            logger.info("Planner returned no plan; objective stays with the root agent")
            return []

        try:
            plan = SubtaskPlan.model_validate(plan_input)
        except ValidationError as e:
            logger.warning(f"Invalid subtask plan: {e.error_count()} error(s)")
            return []

        specs = []
        for item in plan.subtasks:
            if not item.role and not item.agent_id:
                logger.warning(f"Planned subtask without role dropped: {item.objective[:60]}")
                continue
            specs.append(SubtaskSpec(objective=item.objective, agent_id=item.agent_id, role=item.role))

        if self.max_subtasks is not None:
            specs = specs[:self.max_subtasks]

        logger.info(f"Planner produced {len(specs)} subtask(s)")
        return specs
