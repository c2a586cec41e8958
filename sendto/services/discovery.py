import logging
from dataclasses import dataclass

import httpx

from ..errors import DiscoveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApiHosts:
    auth_host: str
    sync_host: str


class DiscoveryResolver:
    """Looks up the current reMarkable cloud hosts.

    The discovery document maps service names to host names; ``webapp``
    serves device/user tokens and ``notifications`` is the sync host.
    """

    def __init__(self, http: httpx.Client, url: str):
        self._http = http
        self._url = url

    def resolve(self) -> ApiHosts:
        try:
            response = self._http.get(self._url)
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Failed to fetch discovery URL: {e}") from e
        if response.status_code != 200:
            raise DiscoveryError(
                f"Failed to fetch discovery URL (response code): {response.status_code}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise DiscoveryError("Discovery response is not valid JSON") from e
        if not isinstance(data, dict):
            raise DiscoveryError("Discovery response is not a JSON object")

        auth_host = data.get("webapp")
        if not auth_host:
            raise DiscoveryError(f"Failed to fetch auth host: {auth_host!r}")
        sync_host = data.get("notifications")
        if not sync_host:
            raise DiscoveryError(f"Failed to fetch sync host: {sync_host!r}")

        hosts = ApiHosts(auth_host=f"https://{auth_host}", sync_host=f"https://{sync_host}")
        logger.info("API hosts initialized: %s %s", hosts.auth_host, hosts.sync_host)
        return hosts
