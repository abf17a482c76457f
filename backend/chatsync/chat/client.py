"""
Chat microservice REST client.

WHAT: History, send, mark-read, unread counts and transaction list calls
WHY: The engine consumes these endpoints; failures must arrive as typed chat errors
HOW: HTTPX async client with bearer auth, retry with exponential backoff on transient faults
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx

from .auth import AuthSession, is_authenticated
from .codec import decode_envelope, decode_history
from .types import (
    AuthRequiredError,
    ChatResponseError,
    ChatTimeoutError,
    ChatUnavailableError,
)
from ..core.config import settings
from ..models.message import ChatMessage, MessageOrigin
from ..models.transaction import TransactionSummary
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OutgoingFile:
    """File attached to an outgoing message."""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class ChatApiClient:
    """REST client for the chat microservice."""

    def __init__(
        self,
        auth: AuthSession,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.auth = auth
        self.base_url = (base_url or settings.CHAT_API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.CHAT_API_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else settings.CHAT_MAX_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.CHAT_RETRY_DELAY

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(5.0, read=self.timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        token = self.auth.access_token if self.auth else None
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _require_auth(self, action: str) -> None:
        if not is_authenticated(self.auth):
            raise AuthRequiredError(f"Authentication required to {action}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        max_retries: int | None = None,
        **kwargs,
    ) -> Any:
        """
        Send a request and return its decoded JSON body.

        WHAT: Single choke point for error mapping and retries
        WHY: Callers only ever see ChatApiError subclasses
        HOW: Retry timeouts, connection faults and 5xx; fail fast on auth and other 4xx

        Raises:
            ChatTimeoutError: Timed out on every attempt
            ChatUnavailableError: Service not reachable
            AuthRequiredError: 401/403 from the service
            ChatResponseError: Other HTTP errors or a non-JSON body
        """
        attempts = max(1, max_retries if max_retries is not None else self.max_retries)

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                response = await self.client.request(method, path, headers=self._headers(), **kwargs)
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                logger.warning(f"Chat API timeout on {method} {path} (attempt {attempt + 1}/{attempts})")
                if last_attempt:
                    raise ChatTimeoutError(f"{method} {path} timed out after {attempts} attempts") from e

            except httpx.TransportError as e:
                logger.error(f"Chat API not reachable on {method} {path} (attempt {attempt + 1}/{attempts}): {e}")
                if last_attempt:
                    raise ChatUnavailableError("Chat service is not reachable") from e

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if status_code in (401, 403):
                    raise AuthRequiredError(f"Chat service rejected credentials ({status_code})") from e
                if status_code < 500:
                    raise ChatResponseError(
                        f"HTTP {status_code}: {_error_detail(e.response)}", status_code
                    ) from e
                logger.error(f"Chat API server error {status_code} on {method} {path} (attempt {attempt + 1}/{attempts})")
                if last_attempt:
                    raise ChatResponseError(f"Server error: {status_code}", status_code) from e

            except ValueError as e:
                logger.error(f"Invalid JSON from chat API on {method} {path}: {e}")
                raise ChatResponseError(f"Invalid response format: {e}") from e

            await asyncio.sleep(self.retry_delay * (2 ** attempt))

    async def get_messages(self, conversation_id: str) -> list[ChatMessage]:
        """
        Fetch a conversation's message history.

        Returns:
            Messages tagged with origin FETCHED, in server order
        """
        data = await self._request(
            "GET", f"/messages/{conversation_id}", max_retries=settings.HISTORY_MAX_RETRIES
        )
        items = data.get("messages", []) if isinstance(data, dict) else []
        messages, rejected = decode_history(items)
        for reject in rejected:
            logger.warning(f"Dropped history entry for {conversation_id}: {reject.reason}")
        logger.debug(f"Fetched {len(messages)} messages for {conversation_id}")
        return messages

    async def send_message(
        self,
        conversation_id: str,
        body: str,
        file: OutgoingFile | None = None,
    ) -> ChatMessage | None:
        """
        Post a new message. Not retried, a repeat could duplicate the message.

        Returns:
            The acknowledged message (origin PENDING) when the service echoes one, else None

        Raises:
            AuthRequiredError: No session, checked before any request is made
        """
        self._require_auth("send messages")

        form = {"transaction_id": conversation_id}
        if body:
            form["message"] = body
        files = None
        if file is not None:
            files = {"file": (file.filename, file.content, file.content_type)}

        data = await self._request("POST", "/messages", max_retries=1, data=form, files=files)
        ack = decode_envelope(data, origin=MessageOrigin.PENDING) if isinstance(data, dict) else None
        if isinstance(ack, ChatMessage):
            logger.info(f"Message {ack.id} accepted for {conversation_id}")
            return ack
        logger.info(f"Message accepted for {conversation_id} (no identity echoed)")
        return None

    async def mark_read(self, conversation_id: str) -> int:
        """Mark every message in a conversation as read; returns the marked count."""
        self._require_auth("mark messages as read")
        data = await self._request("POST", f"/messages/{conversation_id}/mark-read", max_retries=1)
        try:
            return int(data.get("marked_count", 0))
        except (AttributeError, TypeError, ValueError) as e:
            raise ChatResponseError(f"Invalid mark-read response: {data!r}") from e

    async def get_unread_counts(self) -> dict[str, int]:
        """Per-conversation unread counts as the service sees them."""
        data = await self._request("GET", "/transactions/unread-counts")
        counts: dict[str, int] = {}
        for entry in data.get("counts", []) if isinstance(data, dict) else []:
            try:
                counts[str(entry["transaction_id"])] = max(0, int(entry.get("unread_count", 0)))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Ignoring malformed unread count entry: {entry!r}")
        return counts

    async def get_transactions(
        self,
        archived: bool = False,
        *,
        max_retries: int | None = None,
    ) -> list[TransactionSummary]:
        """Fetch the caller's transactions list for one partition."""
        data = await self._request(
            "GET",
            "/transactions",
            max_retries=max_retries,
            params={"archived": str(archived).lower()},
        )
        return _parse_transactions(data, archived)

    async def search_transactions(self, query: str) -> list[TransactionSummary]:
        """Search transactions by company, buyer or auction name."""
        data = await self._request("GET", "/transactions/search", params={"q": query})
        return _parse_transactions(data, None)

    async def ping(self) -> dict:
        """
        Check chat service reachability.

        Returns:
            Dict with available flag, base_url and error
        """
        try:
            response = await self.client.get("/", headers=self._headers(), timeout=5.0)
            available = response.status_code < 500
            return {
                "available": available,
                "base_url": self.base_url,
                "error": None if available else f"HTTP {response.status_code}",
            }
        except httpx.TimeoutException:
            logger.warning("Chat API ping timeout")
            return {"available": False, "base_url": self.base_url, "error": "Request timed out"}
        except httpx.TransportError as e:
            logger.warning(f"Chat API not reachable: {e}")
            return {"available": False, "base_url": self.base_url, "error": "Connection refused"}

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def _parse_transactions(data: Any, archived: bool | None) -> list[TransactionSummary]:
    items = data.get("transactions", []) if isinstance(data, dict) else []
    summaries: list[TransactionSummary] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if archived is not None and "archived" not in item:
            item = {**item, "archived": archived}
        try:
            summaries.append(TransactionSummary.model_validate(item))
        except ValueError as e:
            logger.warning(f"Ignoring malformed transaction entry: {e}")
    return summaries


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return response.text
