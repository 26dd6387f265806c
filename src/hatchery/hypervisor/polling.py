"""Bounded readiness polling for asynchronous hypervisor-side transitions."""

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from hatchery.errors import ApiError, NotFoundError, NotReady, PollTimeout, ProbeFailed, TransportError
from hatchery.models.config import PollSettings
from hatchery.models.records import ContainerStatus

if TYPE_CHECKING:
    from hatchery.hypervisor.client import HypervisorClient


logger = logging.getLogger(__name__)

T = TypeVar("T")

Probe = Callable[[], Awaitable[T]]


class ReadinessPoller:
    """Repeatedly invoke a probe until it succeeds, fails fatally or runs out of attempts.

    A probe returns its value on success, raises NotReady (or TransportError)
    to be retried and ProbeFailed to abort immediately.
    """

    def __init__(
        self,
        max_attempts: int,
        delay: float = 2.0,
        backoff: float = 1.0,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.backoff = backoff
        self.max_delay = max_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: PollSettings, **kwargs) -> "ReadinessPoller":
        return cls(
            max_attempts=settings.max_attempts,
            delay=settings.delay,
            backoff=settings.backoff,
            max_delay=settings.max_delay,
            **kwargs,
        )

    def _delay_for(self, attempt: int) -> float:
        delay = self.delay * (self.backoff ** (attempt - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    async def wait(self, probe: Probe, description: str) -> T:
        """Poll until the probe returns; raise PollTimeout when attempts run out."""
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await probe()
                logger.debug(f"{description}: ready after {attempt} attempt(s)")
                return result
            except ProbeFailed:
                raise
            except (NotReady, TransportError) as e:
                last_error = e
                logger.debug(f"{description}: attempt {attempt}/{self.max_attempts} not ready ({e})")

            if attempt < self.max_attempts:
                await self._sleep(self._delay_for(attempt))

        raise PollTimeout(description, self.max_attempts, last_error)


def registration_probe(client: "HypervisorClient", vmid: int, hostname: str) -> Probe:
    """Ready once the container's config reports the expected hostname."""
    async def probe() -> str:
        try:
            config = await client.get_config(vmid)
        except NotFoundError as e:
            raise NotReady(f"container {vmid} not registered yet") from e
        reported = config.get("hostname")
        if reported != hostname:
            raise NotReady(f"container {vmid} reports hostname {reported!r}, expected {hostname!r}")
        return reported
    return probe


def status_probe(client: "HypervisorClient", vmid: int, expected: ContainerStatus) -> Probe:
    """Ready once the container reports the expected runtime status."""
    async def probe() -> ContainerStatus:
        status = await client.get_status(vmid)
        if status != expected:
            raise NotReady(f"container {vmid} is {status.value}, waiting for {expected.value}")
        return status
    return probe


def removal_probe(client: "HypervisorClient", vmid: int) -> Probe:
    """Ready once the container's config can no longer be read."""
    async def probe() -> None:
        try:
            await client.get_config(vmid)
        except NotFoundError:
            return None
        raise NotReady(f"container {vmid} still registered")
    return probe


def address_probe(client: "HypervisorClient", vmid: int, interface: str = "eth0") -> Probe:
    """Ready once the named interface holds an address.

    An interface list with nothing but loopback means the container's network
    is still coming up. A populated list without the named interface will not
    fix itself, so it fails immediately.
    """
    async def probe() -> str:
        try:
            interfaces = await client.get_interfaces(vmid)
        except NotFoundError:
            raise
        except ApiError as e:
            # Interface listing is rejected while the container init is still starting
            raise NotReady(f"interfaces of container {vmid} unavailable: {e.message}") from e
        for name, address in interfaces:
            if name == interface:
                if not address:
                    raise NotReady(f"{interface} on container {vmid} has no address yet")
                return address

        names = [name for name, _ in interfaces if name != "lo"]
        if not names:
            raise NotReady(f"no interfaces reported for container {vmid} yet")
        raise ProbeFailed(
            f"container {vmid} has no interface named {interface} (found: {', '.join(names)})"
        )
    return probe
