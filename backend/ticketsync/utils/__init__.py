"""
Utility modules for the engine.
"""
from .telemetry import (
    track_append,
    track_duplicate,
    track_send,
    track_typing,
    track_poll,
    track_connection,
    track_escalation,
    track_collaborator,
    active_sessions,
)

__all__ = [
    'track_append',
    'track_duplicate',
    'track_send',
    'track_typing',
    'track_poll',
    'track_connection',
    'track_escalation',
    'track_collaborator',
    'active_sessions',
]
