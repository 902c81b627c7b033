"""
Inbound project structures and their text rendering for indexing.

ProjectContext, Task and AgentNote mirror the JSON of the task-coordination
tool (camelCase keys such as ``assignedTo`` are accepted). Each render_*
function turns one entity into the (title, content, metadata) triple that
the indexing service stores as a document.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Inbound(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Task(_Inbound):
    """A task record of a project."""

    id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: int = Field(default=3, description="1=highest, 5=lowest")
    assigned_to: Optional[str] = None
    notes: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list, description="Task ids")


class AgentNote(_Inbound):
    """A free-text note left by an agent."""

    id: str
    agent: str
    content: str
    timestamp: str = ""
    category: str = "general"


class ProjectContext(_Inbound):
    """A project with its tasks and notes."""

    id: str
    name: str
    description: str = ""
    phase: str = "planning"
    version: Union[int, str] = 1
    tags: list[str] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    notes: list[AgentNote] = Field(default_factory=list)


RenderedDocument = tuple[str, str, dict[str, Any]]


def render_project(project: ProjectContext) -> RenderedDocument:
    content = "\n".join(
        [
            f"# Project: {project.name}",
            "",
            project.description,
            "",
            f"Phase: {project.phase}",
            f"Tags: {', '.join(project.tags) or 'none'}",
            f"Version: {project.version}",
        ]
    )
    metadata = {"phase": project.phase, "tags": list(project.tags), "version": project.version}
    return f"Project: {project.name}", content, metadata


def render_task(task: Task) -> RenderedDocument:
    """
    Render a task; optional lines (assignee, dependencies, notes) are omitted
    when empty, as are all blank lines.
    """
    lines = [
        f"# Task: {task.title}",
        "",
        task.description,
        "",
        f"Status: {task.status}",
        f"Priority: {task.priority}",
        f"Assigned to: {task.assigned_to}" if task.assigned_to else "",
        f"Dependencies: {', '.join(task.dependencies)}" if task.dependencies else "",
        "",
        "## Notes\n" + "\n".join(f"- {note}" for note in task.notes) if task.notes else "",
    ]
    content = "\n".join(line for line in lines if line != "")
    metadata = {"status": task.status, "priority": task.priority, "assigned_to": task.assigned_to}
    return f"Task: {task.title}", content, metadata


def render_note(note: AgentNote) -> RenderedDocument:
    content = "\n".join(
        [
            f"# Note by {note.agent}",
            "",
            f"Category: {note.category}",
            f"Timestamp: {note.timestamp}",
            "",
            note.content,
        ]
    )
    metadata = {"agent": note.agent, "category": note.category}
    return f"Note: {note.category} by {note.agent}", content, metadata
