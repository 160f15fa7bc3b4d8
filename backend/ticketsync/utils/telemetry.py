"""
Telemetry and monitoring utilities.
"""
import logging

from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

# Metrics definitions
messages_appended = Counter(
    'ticketsync_messages_appended_total',
    'Messages added to a local ticket projection',
    ['sender_type', 'source']
)

duplicates_dropped = Counter(
    'ticketsync_duplicates_dropped_total',
    'Deliveries dropped because the message was already present',
    ['source']
)

optimistic_sends = Counter(
    'ticketsync_optimistic_sends_total',
    'Optimistic sends by outcome',
    ['outcome']
)

typing_flushes = Counter(
    'ticketsync_typing_flushes_total',
    'Typing flag flushes',
    ['actor', 'value']
)

poll_cycles = Counter(
    'ticketsync_poll_cycles_total',
    'Polling fallback cycles',
    ['outcome']
)

connection_transitions = Counter(
    'ticketsync_connection_transitions_total',
    'Connection monitor state transitions',
    ['state']
)

escalations = Counter(
    'ticketsync_escalations_total',
    'Escalation outcomes',
    ['outcome']
)

collaborator_calls = Counter(
    'ticketsync_collaborator_calls_total',
    'Collaborator calls by outcome',
    ['service', 'operation', 'outcome']
)

active_sessions = Gauge(
    'ticketsync_active_sessions',
    'Number of active ticket sessions'
)


def track_append(sender_type: str, source: str) -> None:
    """Track a message appended to a projection."""
    messages_appended.labels(sender_type=sender_type, source=source).inc()


def track_duplicate(source: str) -> None:
    """Track a silently dropped duplicate delivery."""
    duplicates_dropped.labels(source=source).inc()


def track_send(outcome: str) -> None:
    """Track an optimistic send outcome (confirmed, failed, pending, rejected)."""
    optimistic_sends.labels(outcome=outcome).inc()


def track_typing(actor: str, value: bool) -> None:
    """Track a typing flag flush."""
    typing_flushes.labels(actor=actor, value=str(value).lower()).inc()


def track_poll(outcome: str) -> None:
    """Track a polling cycle."""
    poll_cycles.labels(outcome=outcome).inc()


def track_connection(state: str) -> None:
    """Track a connection state transition."""
    connection_transitions.labels(state=state).inc()


def track_escalation(outcome: str) -> None:
    """Track an escalation outcome."""
    escalations.labels(outcome=outcome).inc()


def track_collaborator(service: str, operation: str, outcome: str) -> None:
    """Track a collaborator call."""
    collaborator_calls.labels(service=service, operation=operation, outcome=outcome).inc()


__all__ = [
    'messages_appended',
    'duplicates_dropped',
    'optimistic_sends',
    'typing_flushes',
    'poll_cycles',
    'connection_transitions',
    'escalations',
    'collaborator_calls',
    'active_sessions',
    'track_append',
    'track_duplicate',
    'track_send',
    'track_typing',
    'track_poll',
    'track_connection',
    'track_escalation',
    'track_collaborator',
]
