"""OpenAI Codex (ChatGPT Plus/Pro) OAuth.

Implements the headless device flow against ``auth.openai.com`` and the
refresh-token exchange used to keep stored access tokens valid:

1. request a user code and device auth id
2. the user enters the code at ``{ISSUER}/codex/device``
3. poll until an authorization code is issued
4. exchange the authorization code for access and refresh tokens
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import httpx

from pocketcoder.exceptions import TokenRefreshError
from pocketcoder.logging import get_logger

log = get_logger(__name__)

# ── Endpoints ────────────────────────────────────────────────────────

CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
ISSUER = "https://auth.openai.com"
TOKEN_URL = f"{ISSUER}/oauth/token"
DEVICE_CODE_URL = f"{ISSUER}/api/accounts/deviceauth/usercode"
DEVICE_TOKEN_URL = f"{ISSUER}/api/accounts/deviceauth/token"
DEVICE_REDIRECT_URI = f"{ISSUER}/deviceauth/callback"
VERIFICATION_URI = f"{ISSUER}/codex/device"

DEFAULT_EXPIRES_IN = 3600
DEFAULT_POLL_INTERVAL = 5
POLLING_SAFETY_MARGIN = 3.0
DEVICE_FLOW_TIMEOUT = 5 * 60
AUTH_CLAIM = "https://api.openai.com/auth"
USER_AGENT = "PocketCoder/1.0"


# ── Data ─────────────────────────────────────────────────────────────


@dataclass
class CodexTokens:
    """Tokens returned by the Codex token endpoint."""

    access_token: str
    refresh_token: str
    expires_at: float = 0.0  # Unix timestamp
    account_id: str | None = None

    def is_expired(self, buffer_seconds: int = 60) -> bool:
        """Return *True* if the access token expires within *buffer_seconds*."""
        return time.time() >= (self.expires_at - buffer_seconds)


@dataclass
class DeviceCode:
    """User code issued at the start of the device flow."""

    device_auth_id: str
    user_code: str
    interval: int = DEFAULT_POLL_INTERVAL
    verification_uri: str = VERIFICATION_URI


@dataclass
class DeviceAuthorization:
    """Authorization code issued once the user approves the device."""

    authorization_code: str
    code_verifier: str


# ── JWT claims ───────────────────────────────────────────────────────


def _decode_jwt_payload(token: str) -> dict[str, Any] | None:
    parts = (token or "").split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def _account_id_from_claims(claims: dict[str, Any]) -> str | None:
    direct = claims.get("chatgpt_account_id")
    if isinstance(direct, str) and direct:
        return direct

    nested = claims.get(AUTH_CLAIM)
    if isinstance(nested, dict) and nested.get("chatgpt_account_id"):
        return str(nested["chatgpt_account_id"])

    organizations = claims.get("organizations")
    if isinstance(organizations, list) and organizations:
        first = organizations[0]
        if isinstance(first, dict) and first.get("id"):
            return str(first["id"])
    return None


def extract_account_id(id_token: str | None, access_token: str | None) -> str | None:
    """Find the ChatGPT account id, checking the id token before the access token."""
    for token in (id_token, access_token):
        if not token:
            continue
        claims = _decode_jwt_payload(token)
        if claims is None:
            continue
        account_id = _account_id_from_claims(claims)
        if account_id:
            return account_id
    return None


def _tokens_from_response(data: dict[str, Any], fallback_refresh: str = "") -> CodexTokens:
    access_token = data["access_token"]
    return CodexTokens(
        access_token=access_token,
        refresh_token=data.get("refresh_token") or fallback_refresh,
        expires_at=time.time() + int(data.get("expires_in") or DEFAULT_EXPIRES_IN),
        account_id=extract_account_id(data.get("id_token"), access_token),
    )


@asynccontextmanager
async def _http(client: httpx.AsyncClient | None, timeout: float = 30) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as owned:
        yield owned


# ── Token refresh ────────────────────────────────────────────────────


async def refresh_access_token(
    refresh_token: str,
    client: httpx.AsyncClient | None = None,
) -> CodexTokens:
    """Use a refresh token to obtain a fresh access token.

    Raises:
        TokenRefreshError: the endpoint rejected the token or was unreachable
    """
    payload = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": CLIENT_ID,
    }
    try:
        async with _http(client) as http:
            resp = await http.post(TOKEN_URL, data=payload)
            resp.raise_for_status()
            data = resp.json()
        tokens = _tokens_from_response(data, fallback_refresh=refresh_token)
    except (httpx.HTTPError, ValueError, KeyError) as e:
        raise TokenRefreshError(f"Codex token refresh failed: {e}") from e

    log.info("Refreshed Codex access token", has_account=bool(tokens.account_id))
    return tokens


# ── Device flow ──────────────────────────────────────────────────────


async def request_device_code(client: httpx.AsyncClient | None = None) -> DeviceCode:
    """Start the device flow and obtain a user code."""
    async with _http(client, timeout=15) as http:
        resp = await http.post(
            DEVICE_CODE_URL,
            json={"client_id": CLIENT_ID},
            headers={"User-Agent": USER_AGENT},
        )
        resp.raise_for_status()
        data = resp.json()

    try:
        interval = max(1, int(data.get("interval") or DEFAULT_POLL_INTERVAL))
    except (TypeError, ValueError):
        interval = DEFAULT_POLL_INTERVAL
    return DeviceCode(
        device_auth_id=data["device_auth_id"],
        user_code=data["user_code"],
        interval=interval,
    )


async def poll_device_authorization(
    device: DeviceCode,
    client: httpx.AsyncClient | None = None,
) -> DeviceAuthorization | None:
    """Poll once; returns None while the user has not approved yet."""
    async with _http(client, timeout=15) as http:
        resp = await http.post(
            DEVICE_TOKEN_URL,
            json={"device_auth_id": device.device_auth_id, "user_code": device.user_code},
            headers={"User-Agent": USER_AGENT},
        )
    if resp.status_code in (403, 404):
        return None
    resp.raise_for_status()
    data = resp.json()
    return DeviceAuthorization(
        authorization_code=data["authorization_code"],
        code_verifier=data["code_verifier"],
    )


async def exchange_authorization_code(
    authorization: DeviceAuthorization,
    client: httpx.AsyncClient | None = None,
) -> CodexTokens:
    """Exchange an approved device authorization for OAuth tokens."""
    payload = {
        "grant_type": "authorization_code",
        "code": authorization.authorization_code,
        "redirect_uri": DEVICE_REDIRECT_URI,
        "client_id": CLIENT_ID,
        "code_verifier": authorization.code_verifier,
    }
    async with _http(client) as http:
        resp = await http.post(TOKEN_URL, data=payload)
        resp.raise_for_status()
        data = resp.json()
    return _tokens_from_response(data)


async def run_device_flow(
    on_code: Callable[[DeviceCode], None] | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEVICE_FLOW_TIMEOUT,
    poll_interval: float | None = None,
) -> CodexTokens:
    """Run the whole device flow and return the issued tokens.

    Args:
        on_code: Called once with the code the user must enter
        client: Optional HTTP client
        timeout: Seconds to wait for the user before giving up
        poll_interval: Override of the server interval plus safety margin

    Raises:
        TimeoutError: the user did not approve in time
    """
    device = await request_device_code(client)
    if on_code is not None:
        on_code(device)

    interval = poll_interval if poll_interval is not None else device.interval + POLLING_SAFETY_MARGIN
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        await asyncio.sleep(interval)
        try:
            authorization = await poll_device_authorization(device, client)
        except httpx.HTTPError as e:
            log.debug("Device authorization poll failed", error=str(e))
            continue
        if authorization is not None:
            return await exchange_authorization_code(authorization, client)

    raise TimeoutError("Device code expired before it was approved")
