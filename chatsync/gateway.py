"""
Async client for the Evolution API WhatsApp gateway.

Every call is treated as fallible and slow: listing calls retry transport
errors and retryable status codes with exponential backoff, sending never
retries (a resend is the user's decision). All failures surface as
``GatewayError``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from chatsync.config import Settings
from chatsync.utils import backoff_delays

logger = logging.getLogger(__name__)

SEND_TEXT_ENDPOINT = "/message/sendText/{instance}"
FIND_CHATS_ENDPOINT = "/chat/findChats/{instance}"
FIND_MESSAGES_ENDPOINT = "/chat/findMessages/{instance}"

CHATS_PAGE_SIZE = 75
CHATS_MAX_PAGES = 50

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class GatewayError(RuntimeError):
    """Raised when the gateway cannot be reached or rejects a request."""


class RetryableGatewayError(GatewayError):
    """Gateway answered with a status worth retrying."""


class EvolutionClient:
    """HTTP client for the Evolution API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._max_retries = max_retries
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "apikey": api_key,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "EvolutionClient":
        return cls(
            base_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            timeout=settings.GATEWAY_REQUEST_TIMEOUT,
            max_retries=settings.GATEWAY_MAX_RETRIES,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def send_message(self, instance: str, to: str, body: str) -> Dict[str, Any]:
        """Send a text message. Never retried."""
        number = "".join(ch for ch in str(to) if ch.isdigit())
        logger.info(f"Sending message via {instance} to {number}")
        data = await self._request_json(
            "POST",
            SEND_TEXT_ENDPOINT.format(instance=instance),
            {"number": number, "text": body},
            retry=False,
        )
        return data if isinstance(data, dict) else {"response": data}

    async def list_recent_chats(self, instance: str) -> List[Dict[str, Any]]:
        """All chats of an instance, paginated and de-duplicated by remoteJid."""
        chats: List[Dict[str, Any]] = []
        seen = set()
        for page in range(CHATS_MAX_PAGES):
            data = await self._request_json(
                "POST",
                FIND_CHATS_ENDPOINT.format(instance=instance),
                {"where": {}, "limit": CHATS_PAGE_SIZE, "offset": page * CHATS_PAGE_SIZE},
            )
            items = self._extract_items(data, "chats")
            if not items:
                break
            for chat in items:
                if not isinstance(chat, dict):
                    continue
                key = chat.get("remoteJid") or chat.get("id")
                if key in seen:
                    continue
                seen.add(key)
                chats.append(chat)
            if len(items) < CHATS_PAGE_SIZE:
                break
        logger.debug(f"Fetched {len(chats)} chats for {instance}")
        return chats

    async def list_chat_messages(self, instance: str, chat_id: str, limit: int) -> List[Dict[str, Any]]:
        data = await self._request_json(
            "POST",
            FIND_MESSAGES_ENDPOINT.format(instance=instance),
            {"where": {"key": {"remoteJid": chat_id}}, "limit": limit},
        )
        messages = [item for item in self._extract_items(data, "messages") if isinstance(item, dict)]
        logger.debug(f"Fetched {len(messages)} messages for chat {chat_id}")
        return messages

    @staticmethod
    def _extract_items(data: Any, items_key: str) -> List[Any]:
        if isinstance(data, list):
            return data
        if not isinstance(data, dict):
            return []
        value = data.get(items_key)
        if isinstance(value, list):
            return value
        # Evolution v2 wraps pages: {"messages": {"records": [...]}}
        if isinstance(value, dict) and isinstance(value.get("records"), list):
            return value["records"]
        for fallback in ("records", "items", "data"):
            if isinstance(data.get(fallback), list):
                return data[fallback]
        return []

    async def _request_json(
        self, method: str, endpoint: str, payload: Dict[str, Any], retry: bool = True
    ) -> Any:
        attempts = 1 + (self._max_retries if retry else 0)
        delays = backoff_delays()
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                response = await self._client.request(method, endpoint, json=payload)
                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise RetryableGatewayError(f"Gateway returned {response.status_code} for {endpoint}")
                response.raise_for_status()
                return response.json()
            except (httpx.TimeoutException, httpx.TransportError, RetryableGatewayError) as exc:
                last_error = exc
                if attempt >= attempts:
                    break
                delay = next(delays)
                logger.warning(f"Gateway request failed ({exc}). Retry {attempt}/{attempts - 1} in {delay}s")
                await self._sleep(delay)
            except httpx.HTTPStatusError as exc:
                logger.error(f"Non-retryable gateway error: {exc}")
                raise GatewayError(str(exc)) from exc
            except httpx.HTTPError as exc:
                logger.error(f"Gateway request to {endpoint} failed: {exc!r}")
                raise GatewayError(f"Gateway request to {endpoint} failed: {exc}") from exc
            except ValueError as exc:
                logger.error(f"Could not decode gateway response: {exc}")
                raise GatewayError(f"Invalid JSON from {endpoint}") from exc
        raise GatewayError(f"Gateway request to {endpoint} failed: {last_error}") from last_error
