"""
An asynchronous DigitalOcean API client covering the calls a bootstrap needs:
SSH key lookup/import and droplet creation, optionally waiting until the droplet
reports "active".
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

import aiofiles
import aiohttp

from kubestrap.errors import CloudAPIError
from kubestrap.models.cloud import Instance, InstanceCreateRequest, SSHKeyRecord
from kubestrap.models.validator import validate_type
from kubestrap.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.digitalocean.com"

T = TypeVar("T")


class InstanceNotReadyError(CloudAPIError):
    """The droplet exists but has not reached the "active" status yet."""


def _decode(obj: Any, expected_type: Type[T], what: str) -> T:
    """validate_type, with malformed API payloads reported as CloudAPIError."""
    try:
        return validate_type(obj, expected_type)
    except ValueError as exc:
        raise CloudAPIError(f"unexpected response for {what}: {exc}") from exc


class DigitalOceanClient:
    """An asynchronous DigitalOcean client that manages:
      - SSH key registry lookups by fingerprint
      - SSH public key imports
      - Droplet creation, with an optional wait for "active"
    """

    def __init__(
        self,
        token: str,
        *,
        api_url: str = DEFAULT_API_URL,
        poll_interval: float = 5.0,
        poll_attempts: int = 120,
    ) -> None:
        """
        Args:
            token: DigitalOcean personal access token.
            api_url: Base URL of the API.
            poll_interval: Seconds between status polls when waiting.
            poll_attempts: Polls before giving up on a droplet becoming active.
        """
        if not token:
            raise ValueError("A DigitalOcean API token is required.")
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._poll_interval = poll_interval
        self._poll_attempts = poll_attempts
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> DigitalOceanClient:
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Dict[str, Any]]:
        """Send one API request; returns (status, decoded JSON body or {})."""
        session = await self.ensure_session()
        url = f"{self._api_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        try:
            async with session.request(method, url, json=payload, headers=headers) as resp:
                try:
                    raw_js = await resp.json(content_type=None)
                except ValueError:
                    raw_js = None
                body = _decode(raw_js or {}, Dict[str, Any], f"{method} {path}")
                return resp.status, body
        except aiohttp.ClientError as exc:
            raise CloudAPIError(f"{method} {path} failed: {exc}") from exc

    # ------------------------------
    # SSH Keys
    # ------------------------------
    async def get_ssh_key(self, fingerprint: str) -> Optional[SSHKeyRecord]:
        """Look up a registered key by fingerprint; None on 404."""
        status, body = await self._request("GET", f"/v2/account/keys/{fingerprint}")
        if status == 404:
            return None
        if status != 200:
            raise CloudAPIError(f"Error looking up ssh key: {status}, {body}", status)
        return _decode(body.get("ssh_key"), SSHKeyRecord, "ssh key lookup")

    async def import_ssh_key(self, name: str, public_key: str) -> SSHKeyRecord:
        """Register `public_key` under `name`."""
        payload = {"name": name, "public_key": public_key}
        status, body = await self._request("POST", "/v2/account/keys", payload)
        if status not in (200, 201):
            raise CloudAPIError(f"Error importing ssh key: {status}, {body}", status)
        return _decode(body.get("ssh_key"), SSHKeyRecord, "ssh key import")

    # ------------------------------
    # Droplets
    # ------------------------------
    async def get_instance(self, instance_id: int) -> Instance:
        status, body = await self._request("GET", f"/v2/droplets/{instance_id}")
        if status != 200:
            raise CloudAPIError(f"Error reading droplet {instance_id}: {status}, {body}", status)
        return _decode(body.get("droplet"), Instance, f"droplet {instance_id}")

    async def wait_until_active(self, instance_id: int) -> Instance:
        """Poll a droplet until its status is "active"."""

        @async_retry(
            retries=self._poll_attempts,
            delay=self._poll_interval,
            retry_on=(InstanceNotReadyError,),
        )
        async def _poll() -> Instance:
            inst = await self.get_instance(instance_id)
            if inst.status != "active":
                raise InstanceNotReadyError(
                    f"droplet {instance_id} is '{inst.status}', not active"
                )
            return inst

        return await _poll()

    async def create_instance(self, request: InstanceCreateRequest) -> List[Instance]:
        """
        Create a droplet from `request`, reading user data from its file.

        Returns:
            Every droplet record the call produced (refreshed once active, if
            `request.wait` is set).
        """
        async with aiofiles.open(request.user_data_path, "r", encoding="utf-8") as fud:
            user_data = await fud.read()

        payload = {
            "name": request.name,
            "region": request.region,
            "size": request.size,
            "image": request.image,
            "ssh_keys": request.ssh_key_fingerprints,
            "user_data": user_data,
        }
        status, body = await self._request("POST", "/v2/droplets", payload)
        if status not in (200, 202):
            raise CloudAPIError(f"Error creating droplet: {status}, {body}", status)

        raw_droplets = body.get("droplets")
        if raw_droplets is None:
            raw_droplets = [body["droplet"]] if "droplet" in body else []
        instances = _decode(raw_droplets, List[Instance], "droplet create")

        if not request.wait:
            return instances

        logger.info("waiting for %d droplet(s) to become active", len(instances))
        return [
            await self.wait_until_active(inst.id) if inst.id is not None else inst
            for inst in instances
        ]
