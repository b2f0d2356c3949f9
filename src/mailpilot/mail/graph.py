"""Microsoft Graph implementation of the MailProvider protocol.

GraphClient is a blocking requests-based client with retry for 5xx/429 and
network errors. GraphMailbox adapts it to the async MailProvider interface
by running each call in a worker thread.

Label mapping:
    UNREAD  <->  isRead == false
    INBOX   <->  message lives in the Inbox folder (removing it archives)
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import requests

from mailpilot.core.errors import AuthenticationError, MailProviderError
from mailpilot.core.logging import get_logger
from mailpilot.mail.models import INBOX, UNREAD, DraftRequest, Email, ThreadRef

if TYPE_CHECKING:
    from mailpilot.auth.msal_auth import GraphAuth

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

THREAD_MESSAGE_FIELDS = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,"
    "receivedDateTime,isRead,parentFolderId,body,internetMessageId"
)

# Actionable hints for the status codes an operator can do something about
_STATUS_HINTS = {
    401: "The access token was rejected. Delete the token cache and sign in again.",
    403: "Check that Mail.ReadWrite and Mail.Send are granted to the app registration.",
    404: "The message may have been moved or deleted since it was fetched.",
}


class GraphClient:
    """Minimal Microsoft Graph REST client with retry and error mapping."""

    def __init__(
        self,
        auth: GraphAuth,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        session: requests.Session | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.session = session or requests.Session()

    def _get_headers(self) -> dict[str, str]:
        try:
            token = self.auth.get_access_token()
        except AuthenticationError:
            raise
        except Exception as e:
            raise AuthenticationError(
                f"Cannot authenticate with Microsoft Graph: {e}. "
                "Run 'mailpilot validate-config' to check the mail settings."
            ) from e

        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Prefer": 'IdType="ImmutableId", outlook.body-content-type="text"',
        }

    def _make_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _retry_delay(self, attempt: int, response: requests.Response | None = None) -> float:
        """Delay before the next attempt, honouring Retry-After on 429, with ±20% jitter."""
        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        if response is not None and response.status_code == 429:
            try:
                base_delay = float(response.headers.get("Retry-After", base_delay))
            except ValueError:
                pass
        return base_delay + base_delay * 0.2 * (2 * random.random() - 1)

    def _raise_for_response(self, response: requests.Response, method: str, endpoint: str) -> None:
        try:
            error_info = response.json().get("error", {})
            error_code = error_info.get("code", "unknown")
            error_message = error_info.get("message", response.text)
        except ValueError:
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "Graph API error",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        hint = _STATUS_HINTS.get(response.status_code, "")
        raise MailProviderError(
            f"Graph API error ({response.status_code}) on {method} {endpoint}: "
            f"{error_message}. {hint}".rstrip(),
            status_code=response.status_code,
            error_code=error_code,
        )

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Make a Graph request, retrying 5xx, 429, timeouts and connection errors.

        Raises:
            MailProviderError: For API errors or exhausted retries
            AuthenticationError: When no token can be acquired
        """
        url = self._make_url(endpoint)

        for attempt in range(self.max_retries + 1):
            can_retry = attempt < self.max_retries
            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    params=params,
                    json=json,
                    timeout=timeout,
                )
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if not can_retry:
                    raise MailProviderError(
                        f"Request to {endpoint} failed after {self.max_retries} retries: {e}. "
                        "Microsoft Graph may be unreachable."
                    ) from e
                delay = self._retry_delay(attempt)
                logger.warning(
                    "Graph API transport error, retrying",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                time.sleep(delay)
                continue

            if response.status_code < 400:
                if response.status_code == 204 or not response.content:
                    return {}
                return response.json()

            transient = response.status_code == 429 or response.status_code >= 500
            if transient and can_retry:
                delay = self._retry_delay(attempt, response)
                logger.warning(
                    "Retrying Graph API request",
                    method=method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                    delay=delay,
                )
                time.sleep(delay)
                continue

            self._raise_for_response(response, method, endpoint)

        raise MailProviderError(f"Request to {endpoint} failed after {self.max_retries} retries")

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params)

    def post(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("POST", endpoint, json=json)

    def patch(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("PATCH", endpoint, json=json)


# ---------------------------------------------------------------------------
# Graph payload -> Email
# ---------------------------------------------------------------------------


def _format_address(recipient: dict[str, Any] | None) -> str:
    address = (recipient or {}).get("emailAddress", {})
    name = address.get("name") or ""
    email = address.get("address") or ""
    if name and email and name != email:
        return f"{name} <{email}>"
    return email or name


def _parse_datetime(value: str | None) -> datetime:
    if not value:
        return datetime.fromtimestamp(0, tz=UTC)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def message_to_email(message: dict[str, Any], operator_email: str, inbox_id: str | None) -> Email:
    """Build an Email from a Graph message resource."""
    sender_address = ((message.get("from") or {}).get("emailAddress") or {}).get("address", "")

    labels = set()
    if not message.get("isRead", False):
        labels.add(UNREAD)
    if inbox_id is not None and message.get("parentFolderId") == inbox_id:
        labels.add(INBOX)

    return Email(
        id=message["id"],
        thread_id=message.get("conversationId", ""),
        sender=_format_address(message.get("from")),
        to=", ".join(_format_address(r) for r in message.get("toRecipients", [])),
        cc=", ".join(_format_address(r) for r in message.get("ccRecipients", [])),
        subject=message.get("subject") or "",
        body=(message.get("body") or {}).get("content", ""),
        sent_at=_parse_datetime(message.get("receivedDateTime")),
        authored_by_operator=sender_address.lower() == operator_email.lower(),
        labels=frozenset(labels),
        message_id=message.get("internetMessageId"),
    )


class GraphMailbox:
    """MailProvider backed by Microsoft Graph.

    Args:
        client: GraphClient for the operator's mailbox
        operator_email: Address whose messages count as operator-authored
    """

    def __init__(self, client: GraphClient, operator_email: str):
        self.client = client
        self.operator_email = operator_email
        self._inbox_id: str | None = None

    def _inbox_folder_id(self) -> str:
        if self._inbox_id is None:
            self._inbox_id = self.client.get("/me/mailFolders/inbox", params={"$select": "id"})["id"]
        return self._inbox_id

    # -- MailProvider ------------------------------------------------------

    async def list_thread_candidates(self, max_results: int) -> list[ThreadRef]:
        return await asyncio.to_thread(self._list_thread_candidates, max_results)

    def _list_thread_candidates(self, max_results: int) -> list[ThreadRef]:
        response = self.client.get(
            "/me/mailFolders/inbox/messages",
            params={
                "$filter": "isRead eq false",
                "$orderby": "receivedDateTime desc",
                "$select": "id,conversationId,bodyPreview",
                # Several unread messages can share a conversation
                "$top": min(max_results * 3, 100),
            },
        )
        refs: list[ThreadRef] = []
        seen: set[str] = set()
        for message in response.get("value", []):
            conversation_id = message.get("conversationId")
            if not conversation_id or conversation_id in seen:
                continue
            seen.add(conversation_id)
            refs.append(ThreadRef(thread_id=conversation_id, snippet=message.get("bodyPreview", "")))
            if len(refs) >= max_results:
                break

        logger.debug("Thread candidates listed", count=len(refs))
        return refs

    async def get_thread(self, thread_id: str) -> list[Email]:
        return await asyncio.to_thread(self._get_thread, thread_id)

    def _get_thread(self, thread_id: str) -> list[Email]:
        inbox_id = self._inbox_folder_id()
        escaped = thread_id.replace("'", "''")
        response = self.client.get(
            "/me/messages",
            params={
                "$filter": f"conversationId eq '{escaped}'",
                "$select": THREAD_MESSAGE_FIELDS,
                "$top": 50,
            },
        )
        return [
            message_to_email(message, self.operator_email, inbox_id)
            for message in response.get("value", [])
        ]

    async def send_reply(self, email_id: str, body: str) -> None:
        await asyncio.to_thread(self.client.post, f"/me/messages/{email_id}/reply", {"comment": body})
        logger.info("Reply sent", email_id=email_id[:20])

    async def create_draft(self, thread_id: str, draft: DraftRequest) -> str:
        created = await asyncio.to_thread(
            self.client.post,
            f"/me/messages/{draft.in_reply_to}/createReply",
            {"comment": draft.body},
        )
        draft_id = created.get("id", "")
        logger.info("Draft created", thread_id=thread_id[:20], draft_id=draft_id[:20])
        return draft_id

    async def set_labels(
        self,
        email_id: str,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
    ) -> None:
        await asyncio.to_thread(self._set_labels, email_id, set(add), set(remove))

    def _set_labels(self, email_id: str, add: set[str], remove: set[str]) -> None:
        if UNREAD in remove or UNREAD in add:
            self.client.patch(f"/me/messages/{email_id}", {"isRead": UNREAD in remove})
        if INBOX in remove:
            self.client.post(f"/me/messages/{email_id}/move", {"destinationId": "archive"})
        elif INBOX in add:
            self.client.post(f"/me/messages/{email_id}/move", {"destinationId": "inbox"})
