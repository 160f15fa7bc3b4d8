"""
Abstract bot-inference and agent-assignment collaborators.
"""
from abc import ABC, abstractmethod

from ..models import AssignmentResult, InferenceResult


class BotInferenceService(ABC):
    """Produces an automated reply to a customer message."""

    name: str = "support_bot"

    @abstractmethod
    async def infer(self, ticket_id: str, message: str) -> InferenceResult:
        """
        Generate a reply.

        Args:
            ticket_id: Ticket the message belongs to
            message: Customer message text

        Returns:
            InferenceResult with the reply text and whether a live agent
            is suggested
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass


class AgentAssignmentService(ABC):
    """Picks a live agent for a ticket."""

    name: str = "agent_assignment"

    @abstractmethod
    async def assign(self, ticket_id: str) -> AssignmentResult:
        """
        Try to assign an agent.

        Returns:
            AssignmentResult; ``assigned`` is False when every agent is busy
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass


__all__ = ['BotInferenceService', 'AgentAssignmentService']
