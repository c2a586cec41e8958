import functools
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Callable, Optional

import httpx

from ..errors import AuthError, DiscoveryError
from ..utils.tokens import is_token_valid
from .discovery import ApiHosts, DiscoveryResolver
from .store import CredentialStore

logger = logging.getLogger(__name__)

# The device API only hands out tokens to known device classes
DEVICE_DESC = "mobile-android"


@dataclass
class RegisterResult:
    device_id: str
    success: bool = True


@dataclass
class AuthStatus:
    registered: bool
    device_id: Optional[str] = None
    access_token_valid: Optional[bool] = None

    def to_dict(self):
        return {k: v for k, v in asdict(self).items() if v is not None}


def _serialized(method):
    """Run ``method`` under the account lock, after host discovery."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            self._ensure_initialized()
            return method(self, *args, **kwargs)

    return wrapper


class AccountManager:
    """Owns the device credentials of one account id.

    Calls on one instance are serialized; the first call resolves the API
    hosts and every other caller waits for it. If discovery fails the
    instance stays unusable and keeps raising that DiscoveryError.

    Expected absence (no device, refresh rejected) is reported as
    ``None``/``False``; only registration raises ``AuthError``.
    """

    def __init__(
        self,
        auth_id: str,
        store: CredentialStore,
        resolver: DiscoveryResolver,
        http: httpx.Client,
        clock: Callable[[], float] = time.time,
        leeway: int = 0,
    ):
        self.auth_id = auth_id
        self._store = store
        self._resolver = resolver
        self._http = http
        self._clock = clock
        self._leeway = leeway
        self._lock = threading.RLock()
        self._hosts: Optional[ApiHosts] = None
        self._init_error: Optional[DiscoveryError] = None
        self._access_token: Optional[str] = None

    def is_idle(self) -> bool:
        """True when no call is running on this instance right now."""
        if not self._lock.acquire(blocking=False):
            return False
        self._lock.release()
        return True

    def _ensure_initialized(self) -> None:
        if self._init_error is not None:
            raise self._init_error
        if self._hosts is not None:
            return
        logger.info("Initializing account %s", self.auth_id)
        try:
            self._hosts = self._resolver.resolve()
        except DiscoveryError as e:
            logger.error("Discovery failed for account %s: %s", self.auth_id, e)
            self._init_error = e
            raise
        stored = self._store.get(self.auth_id, "access_token")
        if self._token_valid(stored):
            self._access_token = stored

    def _token_valid(self, token: Optional[str]) -> bool:
        return is_token_valid(token, now=self._clock(), leeway=self._leeway)

    def _refresh(self) -> bool:
        if self._token_valid(self._access_token):
            return True

        refresh_token = self._store.get(self.auth_id, "refresh_token")
        if not refresh_token:
            logger.info("No refresh token found for %s, not registered", self.auth_id)
            self._access_token = None
            return False

        url = f"{self._hosts.auth_host}/token/json/2/user/new"
        try:
            response = self._http.post(url, headers={"Authorization": f"Bearer {refresh_token}"})
        except httpx.HTTPError as e:
            logger.warning("Token refresh for %s failed: %s", self.auth_id, e)
            self._access_token = None
            return False

        if response.status_code != 200:
            logger.warning(
                "Failed to refresh access token for %s (response code): %s",
                self.auth_id, response.status_code,
            )
            self._access_token = None
            return False

        token = response.text.strip()
        if not token:
            logger.warning("Failed to refresh access token for %s (no data)", self.auth_id)
            self._access_token = None
            return False
        if not self._token_valid(token):
            logger.warning("Refreshed access token for %s is unreadable or expired", self.auth_id)
            self._access_token = None
            return False

        self._store.put(self.auth_id, "access_token", token)
        self._access_token = token
        logger.info("Refreshed access token for %s", self.auth_id)
        return True

    @property
    @_serialized
    def hosts(self) -> ApiHosts:
        return self._hosts

    @_serialized
    def register(self, link_code: str, device_id: str) -> RegisterResult:
        logger.info("Registering device %s for %s", device_id, self.auth_id)
        # Kept even if registration fails so a retry can reuse the id
        self._store.put(self.auth_id, "device_id", device_id)

        body = {
            "code": link_code,
            "deviceDesc": DEVICE_DESC,
            "deviceID": device_id,
            "secret": "",
        }
        url = f"{self._hosts.auth_host}/token/json/2/device/new"
        try:
            response = self._http.post(url, json=body)
        except httpx.HTTPError as e:
            raise AuthError(f"Failed to register: {e}") from e

        if response.status_code != 200:
            logger.warning("Registration failed (%s). Body: %s", response.status_code, response.text)
            raise AuthError(f"Failed to register (response code): {response.status_code}")

        refresh_token = response.text.strip()
        if not refresh_token:
            raise AuthError("Failed to register (no data)")

        self._store.put(self.auth_id, "refresh_token", refresh_token)
        self._access_token = None
        if not self._refresh():
            # A refresh token that can't mint access tokens is no registration
            self._store.delete(self.auth_id, "refresh_token")
            raise AuthError("Failed to register (not registered after token refresh)")

        logger.info("Registered device %s for %s", device_id, self.auth_id)
        return RegisterResult(device_id=device_id)

    @_serialized
    def get_access_token(self) -> Optional[str]:
        if self._refresh():
            return self._access_token
        return None

    @_serialized
    def is_registered(self) -> bool:
        record = self._store.load(self.auth_id)
        return bool(record.device_id and record.refresh_token)

    @_serialized
    def get_status(self) -> AuthStatus:
        record = self._store.load(self.auth_id)
        if not (record.device_id and record.refresh_token):
            return AuthStatus(registered=False)
        token = self.get_access_token()
        return AuthStatus(
            registered=True,
            device_id=record.device_id,
            access_token_valid=bool(token),
        )

    @_serialized
    def destroy(self) -> None:
        logger.info("Destroying credentials for %s", self.auth_id)
        self._store.delete_all(self.auth_id)
        self._access_token = None


class AccountRegistry:
    """Hands out the single AccountManager for each account id.

    At most ``max_size`` managers are cached. Beyond that the least recently
    used idle ones are dropped; a later lookup builds a fresh instance that
    rediscovers hosts and rereads credentials from the store. A manager whose
    discovery failed keeps failing only while it stays cached.
    """

    def __init__(
        self,
        store: CredentialStore,
        http: httpx.Client,
        discovery_url: str,
        clock: Callable[[], float] = time.time,
        leeway: int = 0,
        max_size: int = 1024,
    ):
        self._store = store
        self._http = http
        self._discovery_url = discovery_url
        self._clock = clock
        self._leeway = leeway
        self._lock = threading.Lock()
        self._max_size = max(1, int(max_size))
        self._managers: "OrderedDict[str, AccountManager]" = OrderedDict()

    def get(self, auth_id: str) -> AccountManager:
        if not auth_id:
            raise ValueError("auth_id is required")
        with self._lock:
            manager = self._managers.get(auth_id)
            if manager is None:
                manager = AccountManager(
                    auth_id,
                    self._store,
                    DiscoveryResolver(self._http, self._discovery_url),
                    self._http,
                    clock=self._clock,
                    leeway=self._leeway,
                )
                self._managers[auth_id] = manager
                self._evict()
            else:
                self._managers.move_to_end(auth_id)
            return manager

    def __len__(self):
        with self._lock:
            return len(self._managers)

    def _evict(self) -> None:
        excess = len(self._managers) - self._max_size
        if excess <= 0:
            return
        # Oldest first; busy managers stay so two instances never share an id
        for auth_id, manager in list(self._managers.items())[:-1]:
            if excess <= 0:
                break
            if manager.is_idle():
                del self._managers[auth_id]
                excess -= 1
                logger.debug("Evicted account manager for %s", auth_id)
