"""Workflow templates as data, plus validation and parsing helpers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from crew_control.errors import ValidationError
from crew_control.models import StepBlueprint, WorkflowTemplate

FEATURE_DEV = WorkflowTemplate(
    id="feature-dev",
    name="Feature Development",
    description="Standard feature development workflow",
    kind="feature-development",
    steps=[
        StepBlueprint(
            name="Requirements Analysis",
            description="Analyze and document feature requirements",
            required_skills=["project_management", "technical_analysis"],
        ),
        StepBlueprint(
            name="Technical Design",
            description="Create technical design and architecture",
            required_skills=["system_architecture", "design_patterns"],
            dependencies=["Requirements Analysis"],
        ),
        StepBlueprint(
            name="Implementation",
            description="Implement the feature",
            required_skills=["coding", "feature_implementation"],
            dependencies=["Technical Design"],
        ),
        StepBlueprint(
            name="Unit Testing",
            description="Write and run unit tests",
            required_skills=["testing", "test_automation"],
            dependencies=["Implementation"],
        ),
        StepBlueprint(
            name="Code Review",
            description="Review code quality and standards",
            required_skills=["code_review", "quality_assurance"],
            dependencies=["Unit Testing"],
        ),
        StepBlueprint(
            name="Integration Testing",
            description="Test integration with existing system",
            required_skills=["integration_testing", "system_testing"],
            dependencies=["Code Review"],
        ),
        StepBlueprint(
            name="Documentation",
            description="Update documentation and user guides",
            required_skills=["documentation", "technical_writing"],
            dependencies=["Integration Testing"],
        ),
    ],
)

BUG_FIX = WorkflowTemplate(
    id="bug-fix",
    name="Bug Fix",
    description="Standard bug fix workflow",
    kind="bug-fix",
    steps=[
        StepBlueprint(
            name="Bug Analysis",
            description="Analyze and reproduce the bug",
            required_skills=["debugging", "problem_solving"],
        ),
        StepBlueprint(
            name="Root Cause Analysis",
            description="Identify the root cause",
            required_skills=["debugging", "system_analysis"],
            dependencies=["Bug Analysis"],
        ),
        StepBlueprint(
            name="Fix Implementation",
            description="Implement the bug fix",
            required_skills=["coding", "bug_fixing"],
            dependencies=["Root Cause Analysis"],
        ),
        StepBlueprint(
            name="Testing",
            description="Test the fix and regression testing",
            required_skills=["testing", "quality_assurance"],
            dependencies=["Fix Implementation"],
        ),
        StepBlueprint(
            name="Review",
            description="Code review and approval",
            required_skills=["code_review", "quality_standards"],
            dependencies=["Testing"],
        ),
    ],
)

BUILTIN_TEMPLATES = (FEATURE_DEV, BUG_FIX)


def validate_template(template: WorkflowTemplate) -> None:
    """Reject duplicate step names, unknown dependencies and dependency cycles."""

    if not template.id.strip():
        raise ValidationError("Template id must not be empty")
    if not template.steps:
        raise ValidationError(f"Template {template.id} has no steps")

    names: set[str] = set()
    for step in template.steps:
        if step.name in names:
            raise ValidationError(f"Template {template.id}: duplicate step name {step.name!r}")
        names.add(step.name)
    for step in template.steps:
        unknown = [dep for dep in step.dependencies if dep not in names]
        if unknown:
            raise ValidationError(
                f"Template {template.id}: step {step.name!r} depends on unknown {unknown}",
            )

    graph = {step.name: list(step.dependencies) for step in template.steps}
    resolved: set[str] = set()
    while len(resolved) < len(graph):
        ready = [
            name
            for name, deps in graph.items()
            if name not in resolved and all(dep in resolved for dep in deps)
        ]
        if not ready:
            stuck = sorted(name for name in graph if name not in resolved)
            raise ValidationError(f"Template {template.id}: dependency cycle among {stuck}")
        resolved.update(ready)


def template_from_dict(raw: Mapping[str, Any]) -> WorkflowTemplate:
    try:
        template = WorkflowTemplate(
            id=str(raw["id"]),
            name=str(raw.get("name") or raw["id"]),
            description=str(raw.get("description", "")),
            kind=str(raw.get("type", raw.get("kind", ""))),
            steps=[
                StepBlueprint(
                    name=str(step["name"]),
                    description=str(step.get("description", "")),
                    required_skills=[str(skill) for skill in step.get("required_skills", [])],
                    dependencies=[str(dep) for dep in step.get("dependencies", [])],
                )
                for step in raw.get("steps", [])
            ],
        )
    except (KeyError, TypeError, AttributeError) as error:
        raise ValidationError(f"Malformed workflow template: {error}") from error
    validate_template(template)
    return template


def templates_from_dicts(raw_templates: Iterable[Mapping[str, Any]]) -> list[WorkflowTemplate]:
    return [template_from_dict(raw) for raw in raw_templates]
