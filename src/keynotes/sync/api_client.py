# Sync Module - Remote Account API Client
#
# httpx client for the remote account service that stores the encrypted
# vault blob. Only ever sees ciphertext.
#
# Supports:
#   - Bearer token authentication, tokens persisted in the key/value store
#   - One token refresh on 401, then exactly one retry of the request
#   - Retry with exponential backoff (3 attempts) on network errors,
#     429 and 5xx
#   - OAuth authorization-code exchange

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..core.store import (
    KEY_ACCESS_TOKEN,
    KEY_REFRESH_TOKEN,
    KEY_SYNC_CONFIG,
    KeyValueStore,
)
from .exceptions import SyncAuthError, SyncRequestError, SyncUnavailable

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "http://localhost:3000/api"
USER_AGENT = "Keynotes/0.1"

# Retry configuration
MAX_RETRIES = 3
INITIAL_BACKOFF_SEC = 1.0
BACKOFF_MULTIPLIER = 2.0
REQUEST_TIMEOUT_SEC = 30


@dataclass
class SyncConfig:
    """Connection settings for the remote account service."""

    api_base: str = DEFAULT_API_BASE
    client_id: str = ""
    client_secret: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "apiBase": self.api_base,
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        return cls(
            api_base=data.get("apiBase") or DEFAULT_API_BASE,
            client_id=data.get("clientId", ""),
            client_secret=data.get("clientSecret", ""),
        )


class SyncApiClient:
    """Client for the remote sync, session and OAuth endpoints.

    Usage::

        client = SyncApiClient(store)
        client.set_config(SyncConfig(api_base="https://id.example/api",
                                     client_id="keynotes"))
        client.exchange_code_for_token(code, redirect_uri)
        status = client.get_sync_status()

    Args:
        store: Key/value store holding config and tokens.
        default_api_base: Used when the stored config has no api base.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        default_api_base: str = DEFAULT_API_BASE,
        timeout: float = REQUEST_TIMEOUT_SEC,
    ):
        self._store = store
        self._default_api_base = default_api_base
        self._timeout = timeout
        self._refresh_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Configuration and tokens
    # ------------------------------------------------------------------

    def set_config(
        self,
        config: SyncConfig,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> None:
        values: Dict[str, Optional[str]] = {KEY_SYNC_CONFIG: json.dumps(config.to_dict())}
        if access_token:
            values[KEY_ACCESS_TOKEN] = access_token
        if refresh_token:
            values[KEY_REFRESH_TOKEN] = refresh_token
        self._store.set_many(values)

    def get_config(self) -> Optional[SyncConfig]:
        raw = self._store.get(KEY_SYNC_CONFIG)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored sync config is not valid JSON, ignoring it")
            return None
        if not isinstance(data, dict):
            return None
        return SyncConfig.from_dict(data)

    def clear_config(self) -> None:
        """Forget the connection and both tokens."""
        self._store.set_many({
            KEY_SYNC_CONFIG: None,
            KEY_ACCESS_TOKEN: None,
            KEY_REFRESH_TOKEN: None,
        })
        logger.info("Sync configuration cleared")

    @property
    def access_token(self) -> Optional[str]:
        return self._store.get(KEY_ACCESS_TOKEN)

    @property
    def refresh_token(self) -> Optional[str]:
        return self._store.get(KEY_REFRESH_TOKEN)

    def has_credentials(self) -> bool:
        """True when configured and holding an access token."""
        return self.get_config() is not None and bool(self.access_token)

    def _api_base(self) -> str:
        config = self.get_config()
        if config is None:
            raise SyncUnavailable("Sync service not configured")
        return (config.api_base or self._default_api_base).rstrip("/")

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self, token: Optional[str]) -> Dict[str, str]:
        headers: Dict[str, str] = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _send(
        self,
        method: str,
        url: str,
        token: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """Execute one HTTP request with retry + exponential backoff.

        Retries on network errors, 429 (rate limit), and 5xx errors.
        Any other response, including 4xx, is returned to the caller.

        Raises:
            SyncUnavailable: All attempts failed.
        """
        backoff = INITIAL_BACKOFF_SEC
        last_error = "no response"

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                resp = httpx.request(
                    method,
                    url,
                    headers=self._build_headers(token),
                    json=body,
                    params=params,
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                last_error = str(exc) or type(exc).__name__
                if attempt < MAX_RETRIES:
                    logger.warning(
                        "Sync request failed (%s), retrying in %.1fs "
                        "(attempt %d/%d)",
                        last_error, backoff, attempt, MAX_RETRIES,
                    )
                    time.sleep(backoff)
                    backoff *= BACKOFF_MULTIPLIER
                continue

            if resp.status_code == 429:
                retry_after = resp.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
                last_error = "rate limited (429)"
                if attempt < MAX_RETRIES:
                    logger.warning(
                        "Sync service rate limited (429), retrying in %.1fs "
                        "(attempt %d/%d)",
                        wait, attempt, MAX_RETRIES,
                    )
                    time.sleep(wait)
                    backoff *= BACKOFF_MULTIPLIER
                continue

            if resp.status_code >= 500:
                last_error = f"server error {resp.status_code}"
                if attempt < MAX_RETRIES:
                    logger.warning(
                        "Sync service error %d, retrying in %.1fs "
                        "(attempt %d/%d)",
                        resp.status_code, backoff, attempt, MAX_RETRIES,
                    )
                    time.sleep(backoff)
                    backoff *= BACKOFF_MULTIPLIER
                continue

            return resp

        raise SyncUnavailable(
            f"Sync request failed after {MAX_RETRIES} attempts: {last_error}"
        )

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Authenticated request. Refreshes the token once on 401.

        Raises:
            SyncUnavailable: Not configured, or the service is unreachable.
            SyncAuthError: Still unauthorized after a refresh attempt.
            SyncRequestError: Any other 4xx response, or a body that is
                not a JSON object.
        """
        url = f"{self._api_base()}/{path.lstrip('/')}"
        resp = self._send(method, url, self.access_token, body, params)

        if resp.status_code == 401:
            token = self._refresh_access_token()
            if token is None:
                raise SyncAuthError("Access token rejected and could not be refreshed")
            resp = self._send(method, url, token, body, params)
            if resp.status_code == 401:
                raise SyncAuthError("Access token rejected after refresh")

        if resp.status_code >= 400:
            raise SyncRequestError(resp.status_code, _error_message(resp))

        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            raise SyncRequestError(resp.status_code, "invalid JSON response")
        if not isinstance(data, dict):
            raise SyncRequestError(resp.status_code, "unexpected response body")
        return data

    def _refresh_access_token(self) -> Optional[str]:
        """Trade the refresh token for a new access token.

        Returns:
            The new access token, or None if refresh is impossible.
        """
        with self._refresh_lock:
            refresh_token = self.refresh_token
            if not refresh_token:
                return None

            try:
                resp = self._send(
                    "POST",
                    f"{self._api_base()}/auth/refresh",
                    body={"refreshToken": refresh_token},
                )
            except SyncUnavailable as exc:
                logger.error("Failed to refresh access token: %s", exc)
                return None

            if resp.status_code >= 400:
                logger.warning("Token refresh rejected (HTTP %d)", resp.status_code)
                return None

            try:
                data = resp.json()
            except ValueError:
                logger.warning("Token refresh returned a non-JSON body")
                return None
            token = data.get("accessToken") if isinstance(data, dict) else None
            if not token:
                return None
            self._store.set(KEY_ACCESS_TOKEN, token)
            logger.info("Sync access token refreshed")
            return token

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def initiate_oauth(self, redirect_uri: str, state: Optional[str] = None) -> Dict[str, Any]:
        """Start the authorization-code flow. Returns the authorization URL payload."""
        config = self.get_config()
        if config is None:
            raise SyncUnavailable("Sync service not configured")
        return self._request(
            "POST",
            "auth/oauth/authorize",
            {"clientId": config.client_id, "redirectUri": redirect_uri, "state": state},
        )

    def exchange_code_for_token(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> Dict[str, Any]:
        """Exchange an authorization code and persist the returned tokens."""
        config = self.get_config()
        if config is None:
            raise SyncUnavailable("Sync service not configured")
        data = self._request(
            "POST",
            "auth/oauth/token",
            {
                "code": code,
                "clientId": config.client_id,
                "clientSecret": config.client_secret,
                "redirectUri": redirect_uri,
            },
        )
        self.set_config(
            config,
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
        )
        logger.info("Connected to sync service at %s", config.api_base)
        return data

    # ------------------------------------------------------------------
    # Sync endpoints
    # ------------------------------------------------------------------

    def get_sync_status(self) -> Dict[str, Any]:
        """Returns {syncSettings, syncData, lastSyncAt}."""
        return self._request("GET", "sync/status")

    def update_sync_preferences(self, sync_settings: bool, sync_data: bool) -> Dict[str, Any]:
        return self._request(
            "PUT",
            "sync/preferences",
            {"syncSettings": sync_settings, "syncData": sync_data},
        )

    def upload_data(self, data_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "sync/data", {"dataType": data_type, "data": data})

    def download_data(self, data_type: str) -> Dict[str, Any]:
        """Returns {data, dataType}."""
        return self._request("GET", "sync/data", params={"dataType": data_type})

    def check_updates(self, data_types: Optional[List[str]] = None) -> Dict[str, Any]:
        """Returns {hasUpdates, updates: {data: {<type>: {updatedAt}}}}."""
        params = {"dataTypes": ",".join(data_types)} if data_types else None
        return self._request("GET", "sync/check-updates", params=params)

    def heartbeat(self, device_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("POST", "sessions/heartbeat", {"deviceInfo": device_info})


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text or "Unknown error"
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return "Unknown error"
