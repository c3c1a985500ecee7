import asyncio
from typing import Awaitable, Protocol, TypeVar

from quotabar.errors import FetchTimeout
from quotabar.models import ProviderIdentifier, ProviderResult

T = TypeVar("T")


class UsageProvider(Protocol):
    """
    UsageProvider stands as a common protocol that all
    usage sources must satisfy.

    fetch() performs one round of acquisition and either returns a
    ProviderResult or raises a FetchError. Providers never retry
    beyond their own documented fallbacks and never touch the
    cache; both belong to the scheduler.
    """

    @property
    def identifier(self) -> "ProviderIdentifier": ...

    @property
    def requires_auth(self) -> "bool": ...

    async def fetch(self) -> "ProviderResult": ...

    async def close(self) -> "None": ...


async def bounded_fetch(
    aw: "Awaitable[T]",
    seconds: "float",
    provider: "ProviderIdentifier",
) -> "T":
    """
    awaits aw for at most seconds, surfacing FetchTimeout instead
    of hanging.
    """
    try:
        async with asyncio.timeout(seconds):
            return await aw
    except TimeoutError as e:
        raise FetchTimeout(provider, f"fetch exceeded {seconds:g}s") from e
