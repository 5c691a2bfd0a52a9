"""Todo list tool for tracking multi-step work across a session."""

import json
import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from . import fmt
from .tools import Tool, ToolResult

logger = logging.getLogger(__name__)

Status = Literal["pending", "in_progress", "completed"]
STATUSES = ("pending", "in_progress", "completed")
TODO_FILE = Path(".prab") / "todos.json"


def new_todo_id() -> str:
    return f"todo-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass
class TodoItem:
    id: str
    content: str
    active_form: str
    status: str = "pending"
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_json(self) -> dict:
        d = asdict(self)
        d["activeForm"] = d.pop("active_form")
        d["createdAt"] = d.pop("created_at")
        return d

    @classmethod
    def from_json(cls, d: dict) -> "TodoItem":
        return cls(
            id=str(d["id"]),
            content=str(d["content"]),
            active_form=str(d.get("activeForm", d["content"])),
            status=d.get("status") if d.get("status") in STATUSES else "pending",
            created_at=int(d.get("createdAt", 0)),
        )


class TodoList:
    """Ordered todo items, saved to ``<base_dir>/.prab/todos.json`` after each change."""

    def __init__(self, base_dir: str | Path | None = None):
        self.items: list[TodoItem] = []
        self.path = Path(base_dir) / TODO_FILE if base_dir is not None else None
        self.load()

    def load(self) -> None:
        if self.path is None or not self.path.is_file():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            self.items = [TodoItem.from_json(d) for d in data.get("todos", [])]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("ignoring unreadable todo file %s: %s", self.path, e)
            self.items = []

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"todos": [item.to_json() for item in self.items]}
        self.path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")

    def find(self, todo_id: str | None, content: str) -> TodoItem | None:
        for item in self.items:
            if (todo_id and item.id == todo_id) or item.content == content:
                return item
        return None

    def counts(self) -> dict[str, int]:
        return {s: sum(1 for i in self.items if i.status == s) for s in STATUSES}

    def clear(self) -> int:
        n = len(self.items)
        self.items.clear()
        self.save()
        return n


class TodoInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    content: str = Field(min_length=1)
    active_form: str = Field(alias="activeForm", min_length=1)
    status: Status = "pending"


class ManageTodosParams(BaseModel):
    action: Literal["create", "update", "complete", "list", "clear"] = Field(
        description="Action to perform"
    )
    todos: list[TodoInput] | None = Field(
        default=None, description="Todo items for create/update/complete actions"
    )


class TodoTool(Tool):
    name = "manage_todos"
    description = (
        "Create, update, or complete todo items to track progress on multi-step tasks. "
        "Use this proactively for complex operations."
    )
    Params = ManageTodosParams

    def __init__(self, todos: TodoList, verbose: bool = True):
        self.todos = todos
        self.verbose = verbose

    def _show(self) -> None:
        if self.verbose:
            fmt.todo_list(self.todos.items)

    def _snapshot(self) -> list[dict]:
        return [item.to_json() for item in self.todos.items]

    def execute(self, params: ManageTodosParams) -> ToolResult:
        action = params.action
        if action == "list":
            self._show()
            c = self.todos.counts()
            return ToolResult.ok(
                f"Total todos: {len(self.todos.items)} "
                f"({c['pending']} pending, {c['in_progress']} in progress, "
                f"{c['completed']} completed)",
                todos=self._snapshot(),
                counts=c,
            )
        if action == "clear":
            n = self.todos.clear()
            return ToolResult.ok("Cleared all todos", removed=n)

        if not params.todos:
            return ToolResult.fail(f"No todos provided for {action} action")

        if action == "create":
            for t in params.todos:
                self.todos.items.append(
                    TodoItem(
                        id=t.id or new_todo_id(),
                        content=t.content,
                        active_form=t.active_form,
                        status=t.status,
                    )
                )
            verb = "Created"
        else:
            missing = []
            for t in params.todos:
                item = self.todos.find(t.id, t.content)
                if item is None:
                    missing.append(t.id or t.content)
                elif action == "update":
                    item.content = t.content
                    item.active_form = t.active_form
                    item.status = t.status
                else:
                    item.status = "completed"
            if len(missing) == len(params.todos):
                return ToolResult.fail(f"No matching todos found: {', '.join(missing)}")
            verb = "Updated" if action == "update" else "Completed"

        self.todos.save()
        self._show()
        changed = len(params.todos) if action == "create" else len(params.todos) - len(missing)
        output = f"{verb} {changed} todo(s)"
        if action != "create" and missing:
            output += f"; not found: {', '.join(missing)}"
        return ToolResult.ok(output, todos=self._snapshot())
