"""
JSON File Store
JSON 文件存储

Durable Store on the local filesystem, layered on InMemoryStore.

Layout:
    <root>/agents/<agent>/messages.jsonl   append-only input log
                                           (plus {"withdrawn": position} tombstones)
    <root>/agents/<agent>/state.json       pointer record: cursor, session,
                                           committed exchange transcript
    <root>/tasks.json                      task records

The pointer record and task file are replaced atomically (temp file +
os.replace), so a cursor commit is a single-file atomic operation. A torn
trailing line in the input log (crash mid-append) is dropped on load.
"""

from __future__ import annotations
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Set, Tuple, Union
from urllib.parse import quote

from ..errors import StoreError
from ..models import CursorState, Message, Task
from .memory_store import AgentLog, InMemoryStore

logger = logging.getLogger(__name__)


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to path atomically"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class JsonFileStore(InMemoryStore):
    """
    Durable JSON store

    Reads are served from memory; every mutation is written to disk first.
    """

    MESSAGES_FILE = "messages.jsonl"
    STATE_FILE = "state.json"
    TASKS_FILE = "tasks.json"

    def __init__(self, root: Union[str, Path]):
        super().__init__()
        self.root = Path(root)
        self.agents_dir = self.root / "agents"
        self.agents_dir.mkdir(parents=True, exist_ok=True)

        self._load()

        logger.info(
            f"JsonFileStore loaded from {self.root}: "
            f"{len(self._agents)} agents, {len(self._tasks)} tasks"
        )

    # ============================================
    # Paths
    # ============================================

    def _agent_dir(self, agent_id: str) -> Path:
        return self.agents_dir / quote(agent_id, safe="")

    # ============================================
    # Persistence hooks
    # ============================================

    def _persist_message(self, agent_id: str, message: Message) -> None:
        self._append_line(agent_id, message.to_dict())

    def _append_line(self, agent_id: str, record: Dict[str, Any]) -> None:
        agent_dir = self._agent_dir(agent_id)
        agent_dir.mkdir(parents=True, exist_ok=True)
        line = json.dumps(record, ensure_ascii=False)
        try:
            with open(agent_dir / self.MESSAGES_FILE, "a", encoding="utf-8") as f:
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StoreError(f"Failed to append to the log of {agent_id}: {e}") from e

    def _persist_withdrawal(self, agent_id: str, position: int) -> None:
        self._append_line(agent_id, {"withdrawn": position})

    def _persist_commit(self, agent_id: str, state: CursorState, outputs: List[Message]) -> None:
        next_position = max(
            [m.position or 0 for m in outputs] + [self._log(agent_id).next_position - 1]
        ) + 1
        record = {
            "agent_id": agent_id,
            "cursor": state.position,
            "session_id": state.session_id,
            "updated_at": state.updated_at.isoformat() if state.updated_at else None,
            "next_position": next_position,
            "outputs": [m.to_dict() for m in outputs],
        }
        try:
            _atomic_write_json(self._agent_dir(agent_id) / self.STATE_FILE, record)
        except OSError as e:
            raise StoreError(f"Failed to commit cursor for {agent_id}: {e}") from e

    def _persist_tasks(self, tasks: Dict[str, Task]) -> None:
        try:
            _atomic_write_json(
                self.root / self.TASKS_FILE,
                {"tasks": [task.to_dict() for task in tasks.values()]},
            )
        except OSError as e:
            raise StoreError(f"Failed to persist tasks: {e}") from e

    # ============================================
    # Loading
    # ============================================

    def _load(self) -> None:
        for agent_dir in sorted(p for p in self.agents_dir.iterdir() if p.is_dir()):
            self._load_agent(agent_dir)
        self._load_tasks()

    def _load_agent(self, agent_dir: Path) -> None:
        inputs, withdrawn = self._read_input_log(agent_dir / self.MESSAGES_FILE)

        state: Dict[str, Any] = {}
        state_path = agent_dir / self.STATE_FILE
        if state_path.exists():
            with open(state_path, "r", encoding="utf-8") as f:
                state = json.load(f)

        outputs = [Message.from_dict(m) for m in state.get("outputs", [])]
        messages = sorted(inputs + outputs, key=lambda m: m.position or 0)
        if not messages and not state:
            return

        agent_id = state.get("agent_id") or messages[0].agent_id
        highest = max([m.position or 0 for m in messages] + [state.get("next_position", 1) - 1])

        updated_at = state.get("updated_at")
        self._agents[agent_id] = AgentLog(
            messages=messages,
            cursor=CursorState(
                position=state.get("cursor", 0),
                session_id=state.get("session_id"),
                updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            ),
            next_position=highest + 1,
            withdrawn=withdrawn,
        )

    def _read_input_log(self, path: Path) -> Tuple[List[Message], Set[int]]:
        if not path.exists():
            return [], set()

        text = path.read_text(encoding="utf-8")
        lines = text.split("\n")

        # 最后一行没有换行符：写入中途崩溃，丢弃
        torn = lines[-1] != ""
        if torn:
            logger.warning(f"Dropping torn trailing line in {path}")
            lines = lines[:-1]
            path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")

        messages: List[Message] = []
        withdrawn: Set[int] = set()
        for line in lines:
            if not line.strip():
                continue
            record = json.loads(line)
            if "withdrawn" in record:
                withdrawn.add(record["withdrawn"])
            else:
                messages.append(Message.from_dict(record))
        return messages, withdrawn

    def _load_tasks(self) -> None:
        path = self.root / self.TASKS_FILE
        if not path.exists():
            return

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        for raw in data.get("tasks", []):
            task = Task.from_dict(raw)
            self._tasks[task.task_id] = task
            self._children.setdefault(task.task_id, [])
            if task.parent_id is not None:
                self._children.setdefault(task.parent_id, []).append(task.task_id)
