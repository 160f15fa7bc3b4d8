"""
Engine configuration settings.
Timing windows, reconnection policy and collaborator endpoints for the
support-chat synchronization engine.

Every field can be overridden from the environment with the
``TICKETSYNC_`` prefix, e.g. ``TICKETSYNC_TYPING_WINDOW=2.0``.
"""
import os
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_WELCOME_MESSAGE = (
    "Hello! Welcome to support. An agent will be with you shortly. "
    "How can we help you today?"
)


class SyncSettings(BaseSettings):
    """
    Configuration for ticket sessions.

    The typing window is shared by customer and agent so that both flags
    behave identically; they are never coupled.
    """

    model_config = SettingsConfigDict(
        env_prefix="TICKETSYNC_",
        env_file=".env",
        extra="ignore",
        validate_assignment=True
    )

    # ===========================
    # Presence
    # ===========================

    typing_window: float = Field(
        default=1.5,
        gt=0.0,
        le=30.0,
        description="Silence window (seconds) before typing flips back to idle"
    )

    # ===========================
    # Connection Monitor
    # ===========================

    poll_interval: float = Field(
        default=5.0,
        gt=0.0,
        le=300.0,
        description="Polling fallback interval in seconds"
    )

    feed_silence_timeout: Optional[float] = Field(
        default=30.0,
        gt=0.0,
        description="Seconds without feed traffic before the feed counts as silent (None disables)"
    )

    heartbeat_interval: Optional[float] = Field(
        default=10.0,
        gt=0.0,
        description="Heartbeat period of the in-memory change feed (None disables)"
    )

    max_reconnect_attempts: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Automatic re-subscription attempts after a channel error"
    )

    reconnect_backoff_base: float = Field(
        default=2.0,
        gt=0.0,
        description="Initial reconnect delay in seconds (doubles per attempt)"
    )

    reconnect_backoff_max: float = Field(
        default=10.0,
        gt=0.0,
        description="Maximum reconnect delay in seconds"
    )

    # ===========================
    # Reconciliation
    # ===========================

    write_timeout: float = Field(
        default=10.0,
        gt=0.0,
        description="Seconds to wait for a persistence write before leaving it pending"
    )

    pending_window: float = Field(
        default=15.0,
        gt=0.0,
        description="Seconds after which an unconfirmed message is marked overdue"
    )

    max_message_length: int = Field(
        default=4000,
        ge=1,
        le=100000,
        description="Maximum message body length in characters"
    )

    max_attachment_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1,
        description="Maximum attachment size in bytes"
    )

    welcome_message: str = Field(
        default=DEFAULT_WELCOME_MESSAGE,
        min_length=1,
        description="Synthetic greeting seeded into new tickets (never persisted)"
    )

    # ===========================
    # Escalation / Collaborators
    # ===========================

    assignment_retry_on_message: bool = Field(
        default=True,
        description="Retry agent assignment once per user message while connecting"
    )

    collaborator_timeout: float = Field(
        default=20.0,
        gt=0.0,
        description="Timeout in seconds for bot-inference and assignment calls"
    )

    bot_max_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Attempts for a bot-inference call on transient failures"
    )

    breaker_fail_max: int = Field(
        default=5,
        ge=1,
        description="Consecutive collaborator failures before the breaker opens"
    )

    breaker_reset_timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds an open breaker waits before a trial call"
    )

    functions_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the hosted functions (support-bot, assign-best-agent)"
    )

    functions_api_key: Optional[SecretStr] = Field(
        default=None,
        description="Bearer key for the hosted functions (supports env://VAR)"
    )

    @field_validator('functions_api_key', mode='before')
    @classmethod
    def load_api_key_from_source(cls, v: Optional[Union[str, SecretStr]]) -> Optional[SecretStr]:
        """
        Load the functions API key.

        Supports a direct value or an ``env://VAR`` reference.
        """
        if v is None or isinstance(v, SecretStr):
            return v

        if not isinstance(v, str):
            raise ValueError(f"API key must be string or SecretStr, got {type(v)}")

        if not v.strip():
            return None

        if v.startswith('env://'):
            env_var = v.replace('env://', '')
            env_value = os.getenv(env_var)

            if not env_value:
                logger.warning(f"Environment variable not set: {env_var}")
                return None

            logger.info(f"Loaded functions API key from environment variable: {env_var}")
            return SecretStr(env_value)

        return SecretStr(v)

    @field_validator('functions_base_url')
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.rstrip('/')

    @model_validator(mode='after')
    def validate_backoff(self) -> 'SyncSettings':
        """Backoff cap must not undercut the initial delay."""
        if self.reconnect_backoff_max < self.reconnect_backoff_base:
            raise ValueError("reconnect_backoff_max must be >= reconnect_backoff_base")
        return self

    # ===========================
    # Helper Methods
    # ===========================

    def get_functions_api_key(self) -> Optional[str]:
        """
        Get the functions API key value.

        Returns:
            API key string or None if not set
        """
        if self.functions_api_key:
            return self.functions_api_key.get_secret_value()
        return None

    def get_component_config(self, component: str) -> Dict[str, Any]:
        """
        Get configuration for a specific engine component.

        Args:
            component: 'presence', 'connection', 'reconciliation' or 'escalation'

        Returns:
            Dictionary of component configuration
        """
        if component == 'presence':
            return {'typing_window': self.typing_window}

        elif component == 'connection':
            return {
                'poll_interval': self.poll_interval,
                'feed_silence_timeout': self.feed_silence_timeout,
                'max_reconnect_attempts': self.max_reconnect_attempts,
                'reconnect_backoff_base': self.reconnect_backoff_base,
                'reconnect_backoff_max': self.reconnect_backoff_max
            }

        elif component == 'reconciliation':
            return {
                'write_timeout': self.write_timeout,
                'pending_window': self.pending_window,
                'max_message_length': self.max_message_length,
                'max_attachment_bytes': self.max_attachment_bytes
            }

        elif component == 'escalation':
            return {
                'assignment_retry_on_message': self.assignment_retry_on_message,
                'collaborator_timeout': self.collaborator_timeout,
                'bot_max_attempts': self.bot_max_attempts,
                'functions_base_url': self.functions_base_url,
                'has_api_key': self.functions_api_key is not None
            }

        else:
            return {}

    def validate_config(self) -> List[str]:
        """
        Check for configurations that work but are likely mistakes.

        Returns:
            List of warnings
        """
        warnings = []

        if (
            self.feed_silence_timeout is not None
            and self.heartbeat_interval is not None
            and self.heartbeat_interval >= self.feed_silence_timeout
        ):
            warnings.append(
                "heartbeat_interval >= feed_silence_timeout: a healthy feed will look silent"
            )

        if self.write_timeout > self.pending_window:
            warnings.append(
                "write_timeout exceeds pending_window: messages turn overdue while still writing"
            )

        if self.functions_base_url and not self.functions_api_key:
            warnings.append("functions_base_url configured but no functions_api_key")

        return warnings


# Create global instance
sync_settings = SyncSettings()


def get_settings() -> SyncSettings:
    """Return the process-wide settings instance."""
    return sync_settings


__all__ = ['SyncSettings', 'sync_settings', 'get_settings', 'DEFAULT_WELCOME_MESSAGE']
