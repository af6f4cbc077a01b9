"""
Conductor API Routes
调度 API 路由

HTTP surface for agents and task trees:
- POST /api/conductor/agents/{agent_id}/messages   - Append a message, schedule a run
- GET  /api/conductor/agents                       - List agents
- GET  /api/conductor/agents/{agent_id}            - Agent status (state, cursor, last run)
- WS   /api/conductor/agents/{agent_id}/stream     - Streamed text deltas
- POST /api/conductor/tasks                        - Create a task tree
- GET  /api/conductor/tasks/{task_id}              - Task tree
- POST /api/conductor/tasks/{task_id}/cancel       - Cancel a task and its descendants
- GET  /api/conductor/stats                        - Runtime statistics
"""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, model_validator

from .core.decomposer import SubtaskSpec
from .errors import TaskNotFound, UnknownAgent
from .output import BroadcastOutputChannel
from .runtime import Conductor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conductor", tags=["conductor"])


# ============================================
# Runtime binding
# ============================================

_conductor: Optional[Conductor] = None


def set_conductor(conductor: Optional[Conductor]) -> None:
    global _conductor
    _conductor = conductor


def get_conductor() -> Conductor:
    if _conductor is None:
        raise HTTPException(status_code=503, detail="Conductor is not configured")
    return _conductor


# ============================================
# Request/Response Models
# ============================================

class PostMessageRequest(BaseModel):
    """Request model for posting a message to an agent"""
    content: str = Field(..., min_length=1, description="User message content")
    wait: bool = Field(False, description="Wait for the run that incorporates the message")


class PostMessageResponse(BaseModel):
    success: bool
    agent_id: str
    position: int
    state: str
    run: Optional[Dict[str, Any]] = None


class AgentStatusResponse(BaseModel):
    agent_id: str
    role: Optional[str]
    model: str
    tools: List[str]
    state: str
    pending_work: bool
    cursor: int
    session_id: Optional[str]
    highest_position: int
    last_run: Optional[Dict[str, Any]] = None


class SubtaskRequest(BaseModel):
    objective: str = Field(..., min_length=1)
    agent_id: Optional[str] = None
    role: Optional[str] = None

    @model_validator(mode="after")
    def _check_binding(self):
        if not self.agent_id and not self.role:
            raise ValueError("subtask needs an agent_id or a role")
        return self


class CreateTaskRequest(BaseModel):
    """Request model for creating a task tree"""
    objective: str = Field(..., min_length=1, description="User objective")
    agent_id: Optional[str] = Field(None, description="Root agent")
    subtasks: Optional[List[SubtaskRequest]] = Field(
        None, description="Explicit subtasks (omit to let the decomposer plan)"
    )
    wait: bool = Field(False, description="Run to completion before responding")


class CreateTaskResponse(BaseModel):
    success: bool
    task_id: str
    status: str
    result: Optional[Dict[str, Any]] = None


class CancelTaskResponse(BaseModel):
    success: bool
    task_id: str
    cancelled: List[str]


# ============================================
# API Endpoints
# ============================================

@router.post("/agents/{agent_id}/messages", response_model=PostMessageResponse)
async def post_message(
    agent_id: str,
    request: PostMessageRequest,
    conductor: Conductor = Depends(get_conductor),
):
    """
    Append a user message and schedule the agent
    追加消息并调度 agent
    """
    try:
        message = await conductor.post_message(agent_id, request.content)
    except UnknownAgent:
        raise HTTPException(status_code=404, detail=f"Agent '{agent_id}' not found")

    run = None
    if request.wait:
        result = await conductor.queue.wait_for(agent_id, message.position)
        run = result.to_dict()

    return PostMessageResponse(
        success=True,
        agent_id=agent_id,
        position=message.position,
        state=conductor.queue.state(agent_id).value,
        run=run,
    )


@router.get("/agents")
async def list_agents(conductor: Conductor = Depends(get_conductor)):
    """Configured (and currently spawned) agents"""
    return {
        "success": True,
        "agents": [
            {
                "agent_id": agent.agent_id,
                "role": agent.role,
                "model": agent.model,
                "state": conductor.queue.state(agent.agent_id).value,
            }
            for agent in conductor.directory.list_agents()
        ],
    }


@router.get("/agents/{agent_id}", response_model=AgentStatusResponse)
async def get_agent(agent_id: str, conductor: Conductor = Depends(get_conductor)):
    """Agent status"""
    try:
        status = await conductor.agent_status(agent_id)
    except UnknownAgent:
        raise HTTPException(status_code=404, detail=f"Agent '{agent_id}' not found")
    return AgentStatusResponse(**status)


@router.post("/tasks", response_model=CreateTaskResponse)
async def create_task(request: CreateTaskRequest, conductor: Conductor = Depends(get_conductor)):
    """
    Create a task tree
    创建任务树
    """
    subtasks = None
    if request.subtasks is not None:
        subtasks = [
            SubtaskSpec(objective=s.objective, agent_id=s.agent_id, role=s.role)
            for s in request.subtasks
        ]

    if request.wait:
        outcome = await conductor.run_task(
            request.objective, agent_id=request.agent_id, subtasks=subtasks,
        )
        return CreateTaskResponse(
            success=outcome.succeeded,
            task_id=outcome.root_id,
            status=outcome.status.value,
            result=outcome.to_dict(),
        )

    task_id = await conductor.start_task(
        request.objective, agent_id=request.agent_id, subtasks=subtasks,
    )
    task = await conductor.store.get_task(task_id)
    return CreateTaskResponse(success=True, task_id=task_id, status=task.status.value)


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, conductor: Conductor = Depends(get_conductor)):
    """Task tree rooted at task_id"""
    try:
        tree = await conductor.get_task_tree(task_id)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task '{task_id}' not found")
    return {
        "success": True,
        "tree": tree.to_dict(),
    }


@router.post("/tasks/{task_id}/cancel", response_model=CancelTaskResponse)
async def cancel_task(task_id: str, conductor: Conductor = Depends(get_conductor)):
    """
    Cancel a task and all descendants
    取消任务及其子任务
    """
    try:
        cancelled = await conductor.cancel_task(task_id)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task '{task_id}' not found")
    return CancelTaskResponse(success=True, task_id=task_id, cancelled=cancelled)


@router.get("/stats")
async def get_stats(conductor: Conductor = Depends(get_conductor)):
    return conductor.get_stats()


@router.websocket("/agents/{agent_id}/stream")
async def stream_agent(websocket: WebSocket, agent_id: str):
    """
    Forward an agent's text deltas

    Server -> Client:
    - subscribed: { agent_id }
    - text_delta: { agent_id, delta }
    """
    await websocket.accept()

    conductor = _conductor
    if conductor is None or not isinstance(conductor.output, BroadcastOutputChannel):
        await websocket.close(code=1011)
        return

    channel = conductor.output
    queue = channel.subscribe(agent_id)
    await websocket.send_json({"type": "subscribed", "agent_id": agent_id})
    logger.info(f"Stream subscriber connected: agent={agent_id}")

    async def forward():
        while True:
            delta = await queue.get()
            await websocket.send_json({"type": "text_delta", "agent_id": agent_id, "delta": delta})

    async def receive_until_disconnect():
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                return

    sender = asyncio.create_task(forward())
    receiver = asyncio.create_task(receive_until_disconnect())
    try:
        await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    except WebSocketDisconnect:
        pass
    finally:
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
        channel.unsubscribe(agent_id, queue)
        logger.info(f"Stream subscriber disconnected: agent={agent_id}")
