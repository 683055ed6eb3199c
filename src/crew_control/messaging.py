"""Messaging and expertise collaborator interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from crew_control.models import Message, Worker


@dataclass(slots=True)
class CollaborationRequest:
    requester: str
    helper_ids: list[str]
    title: str
    description: str
    deadline: datetime


class MessagingCollaborator(Protocol):
    """Expert lookup, notifications and escalation requests."""

    def find_experts(self, topic: str, skills: list[str]) -> list[Worker]: ...

    def send_message(self, message: Message) -> None: ...

    def create_collaboration(  # noqa: PLR0913
        self,
        requester: str,
        helper_ids: list[str],
        title: str,
        description: str,
        deadline: datetime,
    ) -> None: ...


@dataclass(slots=True)
class RecordingMessaging:
    """Collaborator that records traffic and answers expert lookups from a fixed list."""

    experts: list[Worker] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    collaborations: list[CollaborationRequest] = field(default_factory=list)

    def find_experts(self, topic: str, skills: list[str]) -> list[Worker]:
        del topic
        return [worker for worker in self.experts if worker.matched_skills(skills) > 0]

    def send_message(self, message: Message) -> None:
        self.messages.append(message)

    def create_collaboration(  # noqa: PLR0913
        self,
        requester: str,
        helper_ids: list[str],
        title: str,
        description: str,
        deadline: datetime,
    ) -> None:
        self.collaborations.append(
            CollaborationRequest(
                requester=requester,
                helper_ids=list(helper_ids),
                title=title,
                description=description,
                deadline=deadline,
            ),
        )
