import asyncio
import time
from datetime import datetime
from typing import Sequence

import structlog

from quotabar.cache import CacheStore
from quotabar.display import Reading, ReadingStatus, UsageDisplay
from quotabar.errors import (
    ConfigurationError,
    FetchError,
    NoAccountIdentifier,
    NotAuthenticated,
    ParseError,
    TransportError,
)
from quotabar.metrics import MetricsUpdater
from quotabar.models import ProviderIdentifier, ProviderResult, SessionState
from quotabar.provider.base import UsageProvider
from quotabar.session import SessionStateMachine, SessionTransition

logger = structlog.get_logger()

DEFAULT_REFRESH_INTERVAL_SECONDS = 1800


class Scheduler:
    """
    Scheduler is responsible for deciding when providers are fetched
    and what the display sees afterwards. It owns all mutable polling
    state.

    Every trigger (the timer, a manual request, the session becoming
    ready) goes through refresh(), which allows one fetch per
    provider at a time; a trigger arriving while a fetch runs is
    dropped. Each fetch carries a generation number, and a fetch
    whose generation has been superseded is discarded on completion
    so it can never overwrite a newer cache entry.

    Failures degrade to the last cached reading, marked stale, and
    are always logged.
    """

    def __init__(
        self,
        providers: "Sequence[UsageProvider]",
        cache: "CacheStore",
        display: "UsageDisplay",
        session: "SessionStateMachine | None" = None,
        metrics: "MetricsUpdater | None" = None,
        interval_seconds: "float" = DEFAULT_REFRESH_INTERVAL_SECONDS,
    ) -> "None":
        self._providers: "dict[ProviderIdentifier, UsageProvider]" = {
            p.identifier: p for p in providers
        }
        self._cache = cache
        self._display = display
        self._session = session
        self._metrics = metrics
        self._interval = interval_seconds

        self._generation: "dict[ProviderIdentifier, int]" = {}
        # provider -> generation of the fetch currently running
        self._in_flight: "dict[ProviderIdentifier, int]" = {}
        self._last_fetch_at: "dict[ProviderIdentifier, datetime]" = {}
        self._disabled: "set[ProviderIdentifier]" = set()
        self._tasks: "set[asyncio.Task[None]]" = set()
        self._stop_event: "asyncio.Event" = asyncio.Event()

    @property
    def providers(self) -> "list[ProviderIdentifier]":
        return list(self._providers)

    def is_in_flight(self, provider: "ProviderIdentifier") -> "bool":
        return provider in self._in_flight

    def last_fetch_at(self, provider: "ProviderIdentifier") -> "datetime | None":
        return self._last_fetch_at.get(provider)

    def stop(self) -> "None":
        """
        signals the scheduler loop to stop.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        cancels outstanding refreshes without emitting their results,
        then closes all providers.
        """
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for p in self._providers.values():
            await p.close()

    async def run(self) -> "None":
        """
        runs the timer loop and the session event consumer until
        stop() is called. Refreshes every provider immediately and
        then once per interval.
        """
        consumer: "asyncio.Task[None] | None" = None
        if self._session is not None:
            consumer = asyncio.create_task(self._consume_session_events())

        try:
            while not self._stop_event.is_set():
                logger.info("refresh_tick", providers=len(self._providers))
                for provider in self._providers:
                    self.request_refresh(provider)

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self._interval
                    )
                except TimeoutError:
                    pass
        finally:
            if consumer is not None:
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)

    def request_refresh(self, provider: "ProviderIdentifier") -> "asyncio.Task[None]":
        """
        starts refresh(provider) as a background task, for triggers
        that do not wait on the result.
        """
        task = asyncio.create_task(self.refresh(provider))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def refresh_all(self) -> "None":
        await asyncio.gather(*(self.refresh(p) for p in self._providers))

    def supersede(self, provider: "ProviderIdentifier") -> "None":
        """
        invalidates the running fetch for provider, if any. Its
        result will be discarded and a new refresh may start at once.
        """
        if provider not in self._in_flight:
            return
        self._generation[provider] = self._generation.get(provider, 0) + 1
        del self._in_flight[provider]
        logger.info("fetch_superseded", provider=provider.value)

    async def refresh(self, provider_id: "ProviderIdentifier") -> "None":
        provider = self._providers[provider_id]

        if provider_id in self._disabled:
            logger.debug("refresh_skipped_disabled", provider=provider_id.value)
            return
        if provider_id in self._in_flight:
            logger.debug("refresh_skipped_in_flight", provider=provider_id.value)
            return

        generation = self._generation.get(provider_id, 0) + 1
        self._generation[provider_id] = generation
        self._in_flight[provider_id] = generation

        try:
            self._emit(Reading(provider_id, ReadingStatus.REFRESHING))

            if provider.requires_auth and not self._authenticated():
                logger.info("refresh_gated_by_session", provider=provider_id.value)
                self._emit_unauthenticated(provider_id)
                return

            await self._fetch(provider, generation)
        finally:
            if self._in_flight.get(provider_id) == generation:
                del self._in_flight[provider_id]

    async def _fetch(self, provider: "UsageProvider", generation: "int") -> "None":
        provider_id = provider.identifier
        start = time.monotonic()
        result: "ProviderResult | None" = None
        error: "FetchError | None" = None

        try:
            result = await provider.fetch()
        except FetchError as e:
            error = e
        except Exception as e:
            logger.exception("provider_unexpected_error", provider=provider_id.value)
            error = TransportError(provider_id, f"unexpected error: {e!r}")
        finally:
            if self._metrics is not None:
                self._metrics.observe_fetch_duration(
                    provider_id.value, time.monotonic() - start
                )

        if self._generation.get(provider_id) != generation:
            logger.info(
                "stale_completion_discarded",
                provider=provider_id.value,
                generation=generation,
                failed=error is not None,
            )
            return

        if error is not None:
            self._handle_failure(provider_id, error)
            return

        assert result is not None
        self._handle_success(provider_id, result)

    def _handle_success(
        self,
        provider_id: "ProviderIdentifier",
        result: "ProviderResult",
    ) -> "None":
        captured_at = self._cache.save(provider_id, result).captured_at

        self._last_fetch_at[provider_id] = captured_at
        if self._metrics is not None:
            self._metrics.set_last_fetch_success(provider_id.value, time.time())

        self._emit(
            Reading(
                provider_id,
                ReadingStatus.FRESH,
                result=result,
                captured_at=captured_at,
            )
        )

    def _handle_failure(
        self,
        provider_id: "ProviderIdentifier",
        error: "FetchError",
    ) -> "None":
        if isinstance(error, NotAuthenticated):
            logger.info("provider_not_authenticated", provider=provider_id.value)
            self._emit_unauthenticated(provider_id)
            return

        if self._metrics is not None:
            self._metrics.inc_fetch_error(provider_id.value, error.kind)

        if isinstance(error, ConfigurationError):
            # surfaced once, the provider is not polled again
            logger.error(
                "provider_misconfigured", provider=provider_id.value, error=error.message
            )
            self._disabled.add(provider_id)
            self._emit(
                Reading(provider_id, ReadingStatus.ERROR, error=error.message)
            )
            return

        if isinstance(error, (NoAccountIdentifier, ParseError)):
            logger.warning(
                "provider_response_unrecognized",
                provider=provider_id.value,
                kind=error.kind,
                error=error.message,
                field=getattr(error, "field", None),
                context=error.context,
            )
        else:
            logger.warning(
                "provider_fetch_failed",
                provider=provider_id.value,
                kind=error.kind,
                error=error.message,
            )

        snapshot = self._cache.load(provider_id)
        if snapshot is None:
            self._emit(Reading(provider_id, ReadingStatus.ERROR, error=error.message))
            return

        self._emit(
            Reading(
                provider_id,
                ReadingStatus.CACHED,
                result=snapshot.result,
                captured_at=snapshot.captured_at,
                error=error.message,
            )
        )

    def _emit_unauthenticated(self, provider_id: "ProviderIdentifier") -> "None":
        snapshot = self._cache.load(provider_id)
        if snapshot is None:
            self._emit(Reading(provider_id, ReadingStatus.NOT_SIGNED_IN))
            return

        self._emit(
            Reading(
                provider_id,
                ReadingStatus.STALE_UNAUTHENTICATED,
                result=snapshot.result,
                captured_at=snapshot.captured_at,
            )
        )

    def _emit(self, reading: "Reading") -> "None":
        self._display.show(reading)
        if self._metrics is not None:
            self._metrics.update_reading(reading)

    def _authenticated(self) -> "bool":
        return self._session is not None and self._session.is_authenticated

    def handle_session_transition(
        self,
        transition: "SessionTransition",
    ) -> "list[asyncio.Task[None]]":
        """
        forwards the new state to the display and refreshes the
        browser-backed providers. Leaving the authenticated state
        supersedes their running fetches first, since those were
        started under the old session.
        """
        self._display.session_changed(transition.current)
        if self._metrics is not None:
            self._metrics.set_session_state(transition.current)

        gated = [p for p, provider in self._providers.items() if provider.requires_auth]
        if (
            transition.previous is SessionState.AUTHENTICATED
            and transition.current is not SessionState.AUTHENTICATED
        ):
            for provider in gated:
                self.supersede(provider)

        return [self.request_refresh(provider) for provider in gated]

    async def _consume_session_events(self) -> "None":
        assert self._session is not None
        while True:
            transition = await self._session.events.get()
            self.handle_session_transition(transition)
