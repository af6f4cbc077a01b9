"""
Result Synthesis
结果合成

Composes a parent's result from its succeeded children. Caveats about failed
children are attached by the Orchestrator, not here.
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..errors import ConductorError
from ..models import Message, Role, Task
from ..providers.base import ModelStreamClient
from .constants import DEFAULT_MODEL, MAX_OUTPUT_TOKENS
from .events import StreamError, TextDelta

logger = logging.getLogger(__name__)


class Synthesizer(ABC):

    @abstractmethod
    async def synthesize(
        self,
        objective: str,
        succeeded: Sequence[Task],
        failed: Sequence[Task],
    ) -> str:
        ...


class ConcatenatingSynthesizer(Synthesizer):
    """Deterministic: one section per succeeded child, in creation order"""

    async def synthesize(
        self,
        objective: str,
        succeeded: Sequence[Task],
        failed: Sequence[Task],
    ) -> str:
        if len(succeeded) == 1 and not failed:
            return succeeded[0].result or ""

        sections = [
            f"## {task.objective}\n\n{(task.result or '').strip()}"
            for task in succeeded
        ]
        return "\n\n".join(sections)


SYNTHESIS_PROMPT = """You merge the results of subtasks into one answer for the
original objective. Use only the provided results. If some subtasks failed,
say what is missing instead of guessing."""


class ModelSynthesizer(Synthesizer):
    """One model call over the succeeded results; falls back to concatenation"""

    def __init__(
        self,
        client: ModelStreamClient,
        model: str = DEFAULT_MODEL,
        fallback: Optional[Synthesizer] = None,
    ):
        self.client = client
        self.model = model
        self.fallback = fallback or ConcatenatingSynthesizer()

    async def synthesize(
        self,
        objective: str,
        succeeded: Sequence[Task],
        failed: Sequence[Task],
    ) -> str:
        parts: List[str] = [f"Objective: {objective}", ""]
        for task in succeeded:
            parts.append(f"### Subtask: {task.objective}\n{task.result or ''}")
        if failed:
            parts.append("")
            parts.append("Failed subtasks: " + "; ".join(t.objective for t in failed))
        request = [Message(agent_id="synthesizer", role=Role.USER, content="\n".join(parts))]

        text: List[str] = []
        try:
            async for event in self.client.stream_message(
                self.model, SYNTHESIS_PROMPT, request, [], max_tokens=MAX_OUTPUT_TOKENS,
            ):
                if isinstance(event, TextDelta):
                    text.append(event.text)
                elif isinstance(event, StreamError):
                    logger.warning(f"Synthesis call failed ({event.kind.value}), concatenating")
                    return await self.fallback.synthesize(objective, succeeded, failed)
        except ConductorError as e:
            logger.warning(f"Synthesis call failed: {e}, concatenating")
            return await self.fallback.synthesize(objective, succeeded, failed)

        result = "".join(text).strip()
        if not result:
            return await self.fallback.synthesize(objective, succeeded, failed)
        return result
