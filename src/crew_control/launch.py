"""Launch command rendering and input payload composition for worker processes."""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass

from crew_control.errors import SpawnError
from crew_control.models import ProcessConfig, Task, Worker

SUPPORTED_PLACEHOLDERS = ("model", "tools", "worker_id", "role", "task_id", "max_turns")


@dataclass(slots=True)
class LaunchSpec:
    """Resolved argv, working directory, environment and stdin payload."""

    argv: list[str]
    cwd: str
    env: dict[str, str]
    payload: str


def build_launch_spec(  # noqa: PLR0913
    *,
    config: ProcessConfig,
    worker: Worker,
    task: Task | None,
    default_template: str,
    default_model: str,
    default_tools: tuple[str, ...],
) -> LaunchSpec:
    """Resolve the full launch request from worker profile, task and overrides."""

    template = config.command_template or worker.command_template or default_template
    tools = config.tools or worker.tools or list(default_tools)
    argv = build_command(
        command_template=template,
        values={
            "model": config.model or worker.model or default_model,
            "tools": ",".join(tools),
            "worker_id": worker.id,
            "role": worker.role,
            "task_id": task.id if task is not None else "",
            "max_turns": str(config.max_turns) if config.max_turns is not None else "",
        },
    )

    env = os.environ.copy()
    env.update(config.environment)
    env["CREW_CONTROL_WORKER_ID"] = worker.id
    if task is not None:
        env["CREW_CONTROL_TASK_ID"] = task.id

    return LaunchSpec(
        argv=argv,
        cwd=config.working_directory or os.getcwd(),
        env=env,
        payload=compose_payload(
            worker=worker,
            task=task,
            instructions=config.instructions if config.instructions is not None else worker.instructions,
        ),
    )


def build_command(*, command_template: str, values: dict[str, str]) -> list[str]:
    """Render ``command_template`` with shell-quoted values and split into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise SpawnError("Worker command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            **{key: shlex.quote(value) if value else "''" for key, value in values.items()},
        )
    except (KeyError, IndexError) as error:
        raise SpawnError(
            f"Unsupported command template placeholder: {error}. "
            f"Supported: {', '.join(SUPPORTED_PLACEHOLDERS)}",
            transient=False,
        ) from error

    argv = [part for part in shlex.split(rendered) if part]
    if not argv:
        raise SpawnError("Worker command template rendered empty command.", transient=False)
    return argv


def compose_payload(*, worker: Worker, task: Task | None, instructions: str) -> str:
    """Role/task context, then the worker's base instructions, then the task itself."""

    sections = [
        "WORKER CONTEXT:\n"
        f"- Name: {worker.name}\n"
        f"- Role: {worker.role}\n"
        f"- Department: {worker.department or 'n/a'}\n"
        f"- Skills: {', '.join(worker.skills) or 'n/a'}\n"
        f"- Current workload: {worker.workload}/100",
    ]
    if task is not None:
        sections.append(
            "TASK CONTEXT:\n"
            f"- Task ID: {task.id}\n"
            f"- Title: {task.title}\n"
            f"- Priority: {task.priority.value}\n"
            f"- Required skills: {', '.join(task.required_skills) or 'n/a'}\n"
            f"- Metadata: {json.dumps(task.metadata, sort_keys=True, default=str)}",
        )
    if instructions.strip():
        sections.append(instructions.strip())
    if task is not None and task.description.strip():
        sections.append(f"TASK:\n{task.description.strip()}")
    return "\n\n".join(sections) + "\n"
