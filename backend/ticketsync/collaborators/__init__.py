"""
Bot-inference and agent-assignment collaborators.
"""
from .base import BotInferenceService, AgentAssignmentService
from .call_wrapper import CircuitBreakerConfig, RetryConfig, GuardedCall, collaborator_call_context
from .http import FunctionsClient, HttpBotInferenceClient, HttpAgentAssignmentClient

__all__ = [
    'BotInferenceService',
    'AgentAssignmentService',
    'CircuitBreakerConfig',
    'RetryConfig',
    'GuardedCall',
    'collaborator_call_context',
    'FunctionsClient',
    'HttpBotInferenceClient',
    'HttpAgentAssignmentClient',
]
