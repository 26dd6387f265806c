"""Async client for the Proxmox VE container API."""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from hatchery.errors import ApiError, ConfigurationError, NotFoundError, TransportError
from hatchery.models.config import HypervisorConfig
from hatchery.models.container import ContainerSpec, LifecycleState
from hatchery.models.records import ContainerRecord, ContainerStatus


logger = logging.getLogger(__name__)


# Lifecycle targets the API has a dedicated status endpoint for
_STATE_ACTIONS = {
    LifecycleState.STARTED: "start",
    LifecycleState.STOPPED: "stop",
    LifecycleState.RESTARTED: "reboot",
}

# How the API answers (often with a 500) for a container id it has no config file for
_MISSING_CONFIG = re.compile(r"configuration file \S+ does not exist", re.IGNORECASE)


class HypervisorClient:
    """Thin mapping of container intents onto control-plane requests.

    The client never retries; callers own the retry policy. Use it as an async
    context manager so the underlying connection pool is always released:

        async with HypervisorClient(config.hypervisor) as client:
            await client.get_status(110)
    """

    def __init__(self, config: HypervisorConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize client."""
        if not config.token_secret:
            raise ConfigurationError("Hypervisor token secret is not set")
        self.config = config
        self.node = config.node
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HypervisorClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        """Open the shared HTTP session."""
        if self._http is not None:
            return
        token = f"PVEAPIToken={self.config.user}!{self.config.token_id}={self.config.token_secret}"
        self._http = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers={"Authorization": token},
            verify=self.config.verify_ssl,
            timeout=self.config.timeout,
            limits=httpx.Limits(max_connections=self.config.max_sessions),
            transport=self._transport,
        )
        logger.debug(f"Opened hypervisor session to {self.config.base_url}")

    async def close(self) -> None:
        """Release the HTTP session."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("Closed hypervisor session")

    def _lxc_path(self, vmid: Optional[int] = None, suffix: str = "") -> str:
        path = f"/nodes/{self.node}/lxc"
        if vmid is not None:
            path = f"{path}/{vmid}"
        if suffix:
            path = f"{path}/{suffix}"
        return path

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and unwrap the API's `data` envelope."""
        if self._http is None:
            raise RuntimeError("HypervisorClient used outside of its session")

        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise TransportError(
                f"{method} {path} rejected credentials ({response.status_code} {response.reason_phrase})"
            )

        if response.is_error:
            message = self._error_message(response)
            if response.status_code == 404 or _MISSING_CONFIG.search(message):
                raise NotFoundError(response.status_code, message)
            raise ApiError(response.status_code, message)

        try:
            return response.json().get("data")
        except ValueError as e:
            raise ApiError(response.status_code, f"Invalid JSON response: {e}") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Best human-readable message for a rejected request."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            if body.get("message"):
                return str(body["message"]).strip()
            errors = body.get("errors")
            if isinstance(errors, dict) and errors:
                return "; ".join(f"{k}: {str(v).strip()}" for k, v in errors.items())
        return response.reason_phrase or f"HTTP {response.status_code}"

    async def create(self, spec: ContainerSpec) -> str:
        """Submit a container creation request; returns the task id."""
        logger.info(f"Creating container {spec.vmid} ({spec.hostname})")
        upid = await self._request("POST", self._lxc_path(), data=spec.creation_params())
        return str(upid or "")

    async def set_state(self, vmid: int, target: LifecycleState) -> str:
        """Submit a state transition request; returns the task id."""
        action = _STATE_ACTIONS.get(target)
        if action is None:
            raise ValueError(f"No state transition endpoint for {target.value}")
        logger.info(f"Requesting {action} of container {vmid}")
        upid = await self._request("POST", self._lxc_path(vmid, f"status/{action}"))
        return str(upid or "")

    async def delete(self, vmid: int) -> str:
        """Submit a deletion request; the container must be stopped."""
        logger.info(f"Deleting container {vmid}")
        upid = await self._request("DELETE", self._lxc_path(vmid), params={"purge": 1})
        return str(upid or "")

    async def get_config(self, vmid: int) -> Dict[str, Any]:
        """Current persisted configuration; raises NotFoundError if absent."""
        return await self._request("GET", self._lxc_path(vmid, "config")) or {}

    async def get_status(self, vmid: int) -> ContainerStatus:
        """Current runtime status."""
        data = await self._request("GET", self._lxc_path(vmid, "status/current")) or {}
        try:
            return ContainerStatus(data.get("status", "unknown"))
        except ValueError:
            return ContainerStatus.UNKNOWN

    async def get_interfaces(self, vmid: int) -> List[Tuple[str, str]]:
        """Interfaces as (name, address) pairs; address is empty until assigned."""
        data = await self._request("GET", self._lxc_path(vmid, "interfaces")) or []
        interfaces = []
        for iface in data:
            inet = iface.get("inet") or ""
            interfaces.append((iface.get("name", ""), inet.split("/", 1)[0]))
        return interfaces

    async def exists(self, vmid: int) -> bool:
        """Whether the container is registered with the hypervisor."""
        try:
            await self.get_config(vmid)
        except NotFoundError:
            return False
        return True

    async def get_record(self, vmid: int) -> Optional[ContainerRecord]:
        """Live view of a container, or None if it does not exist."""
        try:
            config = await self.get_config(vmid)
        except NotFoundError:
            return None
        status = await self.get_status(vmid)
        address = None
        if status == ContainerStatus.RUNNING:
            for name, addr in await self.get_interfaces(vmid):
                if name != "lo" and addr:
                    address = addr
                    break
        return ContainerRecord(vmid=vmid, hostname=config.get("hostname"), status=status, address=address)
