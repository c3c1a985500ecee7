from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from quotabar.display import Reading
from quotabar.models import MeteredUsage, PayAsYouGoUsage, SessionState


class MetricsUpdater:
    """
    applies readings and fetch outcomes to Prometheus gauges,
    counters and histograms, all labelled by provider.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._usage_percent: "Gauge" = Gauge(
            "quotabar_usage_percent",
            "Share of the quota consumed, 0-100",
            ["provider"],
            registry=registry,
        )
        self._used: "Gauge" = Gauge(
            "quotabar_usage_used",
            "Units consumed for metered providers",
            ["provider"],
            registry=registry,
        )
        self._limit: "Gauge" = Gauge(
            "quotabar_usage_limit",
            "Quota limit for metered providers, 0 when unknown",
            ["provider"],
            registry=registry,
        )
        self._cost: "Gauge" = Gauge(
            "quotabar_cost_usd",
            "Accrued cost in USD for pay-as-you-go providers",
            ["provider"],
            registry=registry,
        )
        self._stale: "Gauge" = Gauge(
            "quotabar_reading_stale",
            "1 when the displayed reading comes from the cache",
            ["provider"],
            registry=registry,
        )
        self._session: "Gauge" = Gauge(
            "quotabar_session_authenticated",
            "1 when the browser session is authenticated",
            registry=registry,
        )
        self._fetch_duration: "Histogram" = Histogram(
            "quotabar_fetch_duration_seconds",
            "Duration of provider fetches",
            ["provider"],
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "quotabar_fetch_errors_total",
            "Total number of fetch errors by provider and kind",
            ["provider", "kind"],
            registry=registry,
        )
        self._last_fetch_success: "Gauge" = Gauge(
            "quotabar_last_fetch_success_timestamp_seconds",
            "Unix timestamp of last successful fetch per provider",
            ["provider"],
            registry=registry,
        )

    def update_reading(self, reading: "Reading") -> "None":
        """
        updates the usage gauges from a reading that carries a result.
        Readings without one leave the previous values in place.
        """
        if reading.result is None:
            return

        provider = reading.provider.value
        usage = reading.result.usage
        self._usage_percent.labels(provider=provider).set(usage.percent)
        self._stale.labels(provider=provider).set(1 if reading.is_stale else 0)

        if isinstance(usage, MeteredUsage):
            self._used.labels(provider=provider).set(usage.used)
            self._limit.labels(provider=provider).set(usage.limit)
        elif isinstance(usage, PayAsYouGoUsage):
            self._cost.labels(provider=provider).set(usage.cost)

    def set_session_state(self, state: "SessionState") -> "None":
        self._session.set(1 if state is SessionState.AUTHENTICATED else 0)

    def observe_fetch_duration(
        self, provider: "str", duration_seconds: "float"
    ) -> "None":
        self._fetch_duration.labels(provider=provider).observe(duration_seconds)

    def inc_fetch_error(self, provider: "str", kind: "str") -> "None":
        self._fetch_errors.labels(provider=provider, kind=kind).inc()

    def set_last_fetch_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_fetch_success.labels(provider=provider).set(timestamp)
