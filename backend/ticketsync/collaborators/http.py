"""
HTTP clients for the hosted support functions.

Both collaborators are plain JSON-over-HTTP functions:

- ``POST {base}/functions/v1/support-bot`` with ``{"message", "ticketId"}``
  returns ``{"reply", "suggestsLiveAgent"}``
- ``POST {base}/functions/v1/assign-best-agent`` with ``{"ticketId"}``
  returns ``{"assigned", "agentName", "agentId"}``
"""
import logging
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import ValidationError

from ..config import SyncSettings, get_settings
from ..errors import AuthExpiredError, TicketSyncError, TransientNetworkError
from ..models import AssignmentResult, InferenceResult
from .base import AgentAssignmentService, BotInferenceService
from .call_wrapper import CircuitBreakerConfig, GuardedCall, RetryConfig

logger = logging.getLogger(__name__)

FUNCTIONS_PATH = "/functions/v1"


class FunctionsClient:
    """
    Shared aiohttp plumbing for the hosted functions.

    The session is created lazily on first use and must be released with
    :meth:`close`.
    """

    def __init__(
        self,
        function_name: str,
        settings: Optional[SyncSettings] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        session: Optional[ClientSession] = None
    ):
        self.settings = settings or get_settings()
        self.function_name = function_name
        self.base_url = (base_url or self.settings.functions_base_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else self.settings.get_functions_api_key()

        if not self.base_url:
            raise ValueError("Functions base URL not configured (set TICKETSYNC_FUNCTIONS_BASE_URL)")

        self._session = session
        self._owns_session = session is None

    @property
    def url(self) -> str:
        return f"{self.base_url}{FUNCTIONS_PATH}/{self.function_name}"

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=ClientTimeout(total=self.settings.collaborator_timeout),
                connector=aiohttp.TCPConnector(limit=10, limit_per_host=5),
                headers={
                    "User-Agent": "ticketsync/1.0",
                    "Accept": "application/json"
                }
            )
            self._owns_session = True
        return self._session

    async def post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST a JSON payload to the function.

        Raises:
            AuthExpiredError: HTTP 401
            TransientNetworkError: 5xx, 429 or a connection failure
            TicketSyncError: Any other non-2xx status or a non-JSON body
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with self._get_session().post(self.url, json=payload, headers=headers) as response:
                if response.status == 401:
                    raise AuthExpiredError(f"{self.function_name} rejected the credentials")

                elif response.status == 429 or response.status >= 500:
                    raise TransientNetworkError(
                        f"{self.function_name} unavailable: HTTP {response.status}"
                    )

                elif response.status >= 400:
                    raise TicketSyncError(f"{self.function_name} error: HTTP {response.status}")

                try:
                    return await response.json()
                except (aiohttp.ContentTypeError, ValueError) as e:
                    raise TicketSyncError(f"Failed to parse {self.function_name} response: {e}")

        except ClientError as e:
            raise TransientNetworkError(f"{self.function_name} request failed: {e}") from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


class HttpBotInferenceClient(BotInferenceService):
    """Bot inference over the ``support-bot`` function."""

    name = "support_bot"

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        session: Optional[ClientSession] = None,
        retry_config: Optional[RetryConfig] = None
    ):
        self.settings = settings or get_settings()
        self.client = FunctionsClient(
            "support-bot", self.settings, base_url=base_url, api_key=api_key, session=session
        )
        self.guard = GuardedCall(
            self.name,
            timeout=self.settings.collaborator_timeout,
            retry_config=retry_config or RetryConfig(max_attempts=self.settings.bot_max_attempts),
            breaker_config=CircuitBreakerConfig(
                fail_max=self.settings.breaker_fail_max,
                reset_timeout=self.settings.breaker_reset_timeout,
                name=self.name
            )
        )

    async def infer(self, ticket_id: str, message: str) -> InferenceResult:
        data = await self.guard(
            "infer",
            self.client.post,
            {"message": message, "ticketId": ticket_id},
            ticket_id=ticket_id
        )
        try:
            return InferenceResult.model_validate(data)
        except ValidationError as e:
            raise TicketSyncError(f"Malformed support-bot response: {e.error_count()} errors")

    async def close(self) -> None:
        await self.client.close()


class HttpAgentAssignmentClient(AgentAssignmentService):
    """
    Agent assignment over the ``assign-best-agent`` function.

    Never retried within one trigger: a second attempt is the next trigger.
    """

    name = "agent_assignment"

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        session: Optional[ClientSession] = None
    ):
        self.settings = settings or get_settings()
        self.client = FunctionsClient(
            "assign-best-agent", self.settings, base_url=base_url, api_key=api_key, session=session
        )
        self.guard = GuardedCall(
            self.name,
            timeout=self.settings.collaborator_timeout,
            breaker_config=CircuitBreakerConfig(
                fail_max=self.settings.breaker_fail_max,
                reset_timeout=self.settings.breaker_reset_timeout,
                name=self.name
            )
        )

    async def assign(self, ticket_id: str) -> AssignmentResult:
        data = await self.guard(
            "assign",
            self.client.post,
            {"ticketId": ticket_id},
            ticket_id=ticket_id
        )
        try:
            return AssignmentResult.model_validate(data)
        except ValidationError as e:
            raise TicketSyncError(f"Malformed assign-best-agent response: {e.error_count()} errors")

    async def close(self) -> None:
        await self.client.close()


__all__ = ['FunctionsClient', 'HttpBotInferenceClient', 'HttpAgentAssignmentClient', 'FUNCTIONS_PATH']
