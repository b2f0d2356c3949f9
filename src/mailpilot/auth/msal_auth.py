"""MSAL device code flow authentication for the Graph mailbox.

Tokens are cached in a file readable only by the owner. Silent acquisition
(cache or refresh token) is tried first; the device code flow is the
interactive fallback and prints its instructions with rich.

Usage:
    auth = GraphAuth(
        client_id=config.mail.client_id,
        tenant_id=config.mail.tenant_id,
        scopes=config.mail.scopes,
        token_cache_path=config.mail.token_cache_path,
    )
    token = auth.get_access_token()
"""

import os
import random
import stat
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import msal
import requests
from rich.console import Console
from rich.panel import Panel

from mailpilot.core.errors import AuthenticationError
from mailpilot.core.logging import get_logger

logger = get_logger(__name__)
console = Console()

MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]

# MSAL error codes mapped to operator guidance
_DEVICE_FLOW_HINTS = {
    "authorization_pending": (
        "Authentication timed out. Run the command again and finish signing in "
        "before the code expires."
    ),
    "authorization_declined": (
        "Authentication was declined. Run the command again and accept the "
        "permission request."
    ),
    "expired_token": "The device code expired. Run the command again.",
}


def _jittered(delay: float) -> float:
    return delay + delay * 0.2 * (2 * random.random() - 1)


class GraphAuth:
    """Acquires Microsoft Graph access tokens for a single mailbox.

    Attributes:
        client_id: Azure AD Application (client) ID
        tenant_id: Azure AD tenant ID or 'common'
        scopes: Graph permission scopes requested
        token_cache_path: File holding the serialized MSAL token cache
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        scopes: list[str],
        token_cache_path: str,
    ):
        if not client_id or not client_id.strip():
            raise ValueError(
                "mail.client_id is required. Register an app in Azure Portal "
                "(Microsoft Entra ID -> App registrations) and copy its client ID."
            )

        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = scopes
        self.token_cache_path = Path(token_cache_path)
        self.cache = msal.SerializableTokenCache()
        self._load_cache()

        self.app = msal.PublicClientApplication(
            client_id=self.client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            token_cache=self.cache,
        )

    def get_access_token(self) -> str:
        """Return a valid access token, prompting via device code if needed.

        Raises:
            AuthenticationError: If no token can be acquired
        """
        token = self._token_from_cache()
        if token is not None:
            return token

        logger.info("token_device_flow_start", scopes=self.scopes)
        return self._device_code_flow()

    def _token_from_cache(self) -> str | None:
        """Silent acquisition for the first cached account, refreshing if needed."""
        accounts = self.app.get_accounts()
        if not accounts:
            return None

        try:
            result = self._with_network_retry(
                "silent token acquisition",
                lambda: self.app.acquire_token_silent(scopes=self.scopes, account=accounts[0]),
            )
        except AuthenticationError as e:
            # The device flow may still get through
            logger.warning("token_silent_unavailable", error=str(e))
            return None

        if not result or "access_token" not in result:
            return None
        self._save_cache()
        return result["access_token"]

    def _with_network_retry(self, operation: str, call: Callable[[], Any]) -> Any:
        """Run an MSAL call, retrying transient network errors with jitter."""
        last_error: Exception | None = None
        for attempt in range(MSAL_MAX_RETRIES):
            try:
                return call()
            except requests.exceptions.RequestException as e:
                last_error = e
                if attempt == MSAL_MAX_RETRIES - 1:
                    break
                delay = _jittered(MSAL_RETRY_DELAYS[attempt])
                logger.warning(
                    "msal_call_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                time.sleep(delay)

        raise AuthenticationError(
            f"{operation.capitalize()} failed after {MSAL_MAX_RETRIES} attempts: "
            f"{last_error}. Check your network connection and try again."
        ) from last_error

    def _device_code_flow(self) -> str:
        flow = self._with_network_retry(
            "device flow initiation",
            lambda: self.app.initiate_device_flow(scopes=self.scopes),
        )
        if "user_code" not in flow:
            raise AuthenticationError(
                "Failed to initiate device code flow: "
                f"{flow.get('error_description', 'unknown error')}. Check that "
                "'Allow public client flows' is enabled for the app registration."
            )

        console.print()
        console.print(
            Panel(
                f"Open [bold blue]{flow['verification_uri']}[/bold blue] and enter "
                f"[bold green]{flow['user_code']}[/bold green]\n\nWaiting for sign-in...",
                title="Mailbox sign-in required",
                border_style="bright_blue",
            )
        )

        result = self._with_network_retry(
            "device flow token acquisition",
            lambda: self.app.acquire_token_by_device_flow(flow),
        )
        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            description = result.get("error_description", "Authentication failed")
            logger.error("token_device_flow_failed", error=error)
            raise AuthenticationError(_DEVICE_FLOW_HINTS.get(error, f"Authentication failed: {description}"))

        self._save_cache()
        logger.info(
            "token_acquired",
            account=result.get("id_token_claims", {}).get("preferred_username", "unknown"),
        )
        return result["access_token"]

    def _load_cache(self) -> None:
        if not self.token_cache_path.exists():
            return
        try:
            self.cache.deserialize(self.token_cache_path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(
                "token_cache_unreadable",
                path=str(self.token_cache_path),
                error=str(e),
            )

    def _save_cache(self) -> None:
        """Persist the token cache with mode 600 when MSAL changed it."""
        if not self.cache.has_state_changed:
            return
        try:
            self.token_cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.token_cache_path.write_text(self.cache.serialize())
            os.chmod(self.token_cache_path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            # Not fatal: the next run signs in again
            logger.error(
                "token_cache_write_failed",
                path=str(self.token_cache_path),
                error=str(e),
            )
