"""
MODULE OVERVIEW:
The device-authorization client that turns "nobody is logged in" into a validated API key.

WHAT IS HAPPENING HERE:
`begin()` walks a short cascade, the same way a hybrid transport negotiates down:

  1. hosted mode        -> the service edge authenticates us, nothing to do
  2. local app login    -> a companion app on localhost may hand us a key instantly
  3. device flow init   -> ask the service for a device code and a verification URL

The caller shows the URL, then calls `approve()`, which polls the token endpoint until
the user finishes in the browser. The token endpoint speaks in status codes: 400 means
"still pending", 429 means "slow down" (we add a fixed backoff), anything else that is
not a success is terminal. Every key is probed against `/health` before we trust it.

The clock and the sleep function are injectable, so the whole poll schedule can be
driven deterministically from tests.
"""
import asyncio
import inspect
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

import httpx
from loguru import logger
from pydantic import ValidationError

from npc_stream.client.credentials import CredentialSupplier
from npc_stream.shared.client_utils import mask_secret
from npc_stream.shared.config import Settings, settings as default_settings
from npc_stream.shared.errors import AuthDeniedError, AuthError, AuthInitError, AuthTimeoutError
from npc_stream.shared.events import EventHook
from npc_stream.shared.models import DeviceAuthSession, InitiateAuthFlow, TokenRequest, TokenResponse

UriOpener = Callable[[str], Union[None, Awaitable[None]]]


class AuthState(str, Enum):
    CHECKING = "checking"
    LOCAL_LOGIN = "local_login"
    REQUIRES_AUTH = "requires_auth"
    STARTING_DEVICE_FLOW = "starting_device_flow"
    WAITING_FOR_USER = "waiting_for_user"
    SUCCESS = "success"
    ERROR = "error"


class DeviceAuthClient:
    def __init__(
        self,
        credentials: CredentialSupplier,
        config: Optional[Settings] = None,
        client_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or default_settings
        self.credentials = credentials
        self.client_id = client_id or self.config.CLIENT_ID
        self.state_changed: EventHook[AuthState] = EventHook("state_changed")
        self.credential_acquired: EventHook[str] = EventHook("credential_acquired")
        self.auth_failed: EventHook[str] = EventHook("auth_failed")

        self.credential: Optional[str] = None
        self.last_error: Optional[str] = None
        self.session: Optional[DeviceAuthSession] = None

        self._state = AuthState.CHECKING
        self._in_progress = False
        self._acquired = False
        self._interval = 0
        self._clock = clock
        self._sleep = sleep

        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT_S)

    async def __aenter__(self) -> "DeviceAuthClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def poll_interval(self) -> int:
        return self._interval

    # ==========================
    # FLOW
    # ==========================
    async def begin(self) -> Union[str, DeviceAuthSession]:
        """
        Resolve a credential without user interaction if possible.

        Returns the credential string on a fast path (an empty string in hosted mode),
        otherwise the pending `DeviceAuthSession` the user has to approve.
        """
        if self._in_progress:
            raise AuthError("Authentication flow already in progress")
        self._in_progress = True
        self._acquired = False
        self.last_error = None
        self.session = None

        try:
            self._set_state(AuthState.CHECKING)
            if self.credentials.is_bypass_active():
                logger.info("Hosted mode active, skipping authentication")
                self._succeed("")
                return ""

            if self.config.LOCAL_LOGIN_ENABLED:
                self._set_state(AuthState.LOCAL_LOGIN)
                key = await self._try_local_login()
                if key:
                    self._succeed(key)
                    return key

            self._set_state(AuthState.STARTING_DEVICE_FLOW)
            session = await self._initiate_flow()
        except AuthError as e:
            self._fail(e)
            raise

        self.session = session
        self._interval = max(1, int(session.interval))
        self._set_state(AuthState.REQUIRES_AUTH)
        logger.info(f"Device flow started, verification URL: {session.verification_uri_complete}")
        return session

    async def approve(self, open_uri: Optional[UriOpener] = None) -> str:
        """The user is ready: optionally open the verification URL, then poll for the key."""
        session = self.session
        if session is None or self._state is not AuthState.REQUIRES_AUTH:
            raise AuthError("No device authorization is awaiting approval")

        if open_uri is not None:
            try:
                opened = open_uri(session.verification_uri_complete)
                if inspect.isawaitable(opened):
                    await opened
            except Exception as e:
                logger.warning(f"Could not open verification URL, continue manually: {e}")

        self._set_state(AuthState.WAITING_FOR_USER)
        try:
            key = await self._poll_for_token(session)
        except AuthError as e:
            if self._state is not AuthState.ERROR:
                self._fail(e)
            raise

        self._succeed(key)
        return key

    def deny(self) -> None:
        if not self._in_progress and self.session is None:
            return
        if self._state in (AuthState.SUCCESS, AuthState.ERROR) and not self._in_progress:
            return
        self.session = None
        self._fail(AuthDeniedError("User denied authentication"))

    async def authenticate(self, open_uri: Optional[UriOpener] = None) -> str:
        result = await self.begin()
        if isinstance(result, str):
            return result
        return await self.approve(open_uri)

    async def validate(self, credential: str) -> bool:
        """Probe the health endpoint with the key. Any failure means "not valid"."""
        base_url = self.credentials.get_base_url()
        if not base_url:
            logger.warning("Cannot validate API key: base URL is not configured")
            return False
        try:
            response = await self.client.get(
                f"{base_url.rstrip('/')}/health",
                headers={"Authorization": f"Bearer {credential}", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"API key validation request failed: {e}")
            return False
        if response.is_success:
            logger.debug(f"API key validated: {mask_secret(credential)}")
            return True
        logger.warning(f"API key validation failed: HTTP {response.status_code}")
        return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ==========================
    # STEPS
    # ==========================
    async def _try_local_login(self) -> Optional[str]:
        if not self.client_id:
            return None
        url = f"{self.config.LOCAL_LOGIN_URL.rstrip('/')}/login/web/{self.client_id}"
        try:
            response = await self.client.post(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.debug(f"Local app login unavailable: {type(e).__name__}")
            return None
        if not response.is_success:
            logger.debug(f"Local app login declined: HTTP {response.status_code}")
            return None
        try:
            key = TokenResponse.model_validate_json(response.content).p2_key
        except ValidationError:
            logger.warning("Local app login returned a malformed body")
            return None
        if not key:
            return None
        if not await self.validate(key):
            logger.warning("Local app key failed validation, falling back to device flow")
            return None
        logger.info(f"Authenticated through the local app: {mask_secret(key)}")
        return key

    async def _initiate_flow(self) -> DeviceAuthSession:
        if not self.client_id:
            raise AuthInitError("Client id is not configured")
        base_url = self.credentials.get_base_url()
        if not base_url:
            raise AuthInitError("Base URL is not configured")

        url = f"{base_url.rstrip('/')}/login/device/new"
        try:
            response = await self.client.post(
                url,
                json=InitiateAuthFlow(client_id=self.client_id).model_dump(),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AuthInitError(f"Failed to start device authorization: {e}")

        trace_id = response.headers.get(self.config.TRACE_HEADER)
        if not response.is_success:
            raise AuthInitError(
                f"Failed to start device authorization: HTTP {response.status_code} {response.text}"
                + (f" ({self.config.TRACE_HEADER}: {trace_id})" if trace_id else ""),
                response.status_code,
                trace_id,
            )
        try:
            session = DeviceAuthSession.model_validate_json(response.content)
        except ValidationError as e:
            raise AuthInitError(f"Malformed device authorization response: {e.error_count()} error(s)", trace_id=trace_id)
        return session.model_copy(update={"issued_at": self._clock()})

    async def _poll_for_token(self, session: DeviceAuthSession) -> str:
        url = f"{self.credentials.get_base_url().rstrip('/')}/login/device/token"
        body = TokenRequest(client_id=self.client_id, device_code=session.device_code).model_dump()

        while self._clock() < session.deadline:
            if self.session is not session:
                raise AuthDeniedError("User denied authentication")
            try:
                response = await self.client.post(url, json=body, headers={"Accept": "application/json"})
            except httpx.HTTPError as e:
                raise AuthError(f"Token request failed: {e}")

            status = response.status_code
            if response.is_success:
                key = self._parse_key(response)
                if key and await self.validate(key):
                    return key
                if key:
                    logger.warning("Received API key failed validation, continuing to poll")
            elif status == 400:
                logger.debug("Authorization pending, polling again")
            elif status == 429:
                self._interval += self.config.AUTH_RATE_LIMIT_BACKOFF_S
                logger.warning(f"Token polling rate limited, interval now {self._interval}s")
            else:
                trace_id = response.headers.get(self.config.TRACE_HEADER)
                raise AuthError(f"Authentication failed: HTTP {status}", status, trace_id)

            remaining = session.deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(self._interval, max(1, remaining)))
            if self.session is not session:
                raise AuthDeniedError("User denied authentication")

        raise AuthTimeoutError("Authentication timed out")

    @staticmethod
    def _parse_key(response: httpx.Response) -> Optional[str]:
        try:
            return TokenResponse.model_validate_json(response.content).p2_key
        except ValidationError:
            logger.warning("Token response body is malformed, continuing to poll")
            return None

    # ==========================
    # OUTCOMES
    # ==========================
    def _succeed(self, key: str) -> None:
        self.credential = key
        self.session = None
        self._in_progress = False
        self._set_state(AuthState.SUCCESS)
        if not self._acquired:
            self._acquired = True
            self.credential_acquired.emit(key)

    def _fail(self, error: AuthError) -> None:
        self.last_error = error.reason
        self.session = None
        self._in_progress = False
        logger.error(f"Authentication failed: {error.reason}")
        self._set_state(AuthState.ERROR)
        self.auth_failed.emit(error.reason)

    def _set_state(self, state: AuthState) -> None:
        if state == self._state:
            return
        logger.debug(f"protocol=auth event=state from={self._state.value} to={state.value}")
        self._state = state
        self.state_changed.emit(state)
