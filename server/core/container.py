"""Dependency injection container for the application."""

import httpx
from dependency_injector import containers, providers

from core.cache import ExpiringCache
from core.config import Settings
from core.metrics import PerformanceRecorder
from services.analysis import AnalysisQueue, AnalysisService
from services.orchestration import RetryPolicy, create_dead_letter_sink
from services.sheets import SheetsClient, SheetsQueue, SheetsService
from services.webhooks import WebhookQueue, WebhookService, create_circuit_breaker


class Container(containers.DeclarativeContainer):
    """Application dependency injection container.

    Every provider is a Singleton: caches, queues and the recorder are
    process-wide state shared by all handlers.
    """

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Performance monitoring
    recorder = providers.Singleton(
        PerformanceRecorder,
        max_metrics=settings.provided.metrics_max_count,
        default_window=settings.provided.metrics_window,
    )

    # Caches, one per purpose
    analysis_cache = providers.Singleton(
        ExpiringCache,
        name="analysis_cache",
        default_ttl=settings.provided.analysis_cache_ttl,
        sweep_interval=settings.provided.analysis_cache_sweep_interval,
    )

    sheets_cache = providers.Singleton(
        ExpiringCache,
        name="sheets_cache",
        default_ttl=settings.provided.sheets_cache_ttl,
        sweep_interval=settings.provided.sheets_cache_sweep_interval,
    )

    webhook_cache = providers.Singleton(
        ExpiringCache,
        name="webhook_cache",
        default_ttl=settings.provided.webhook_cache_ttl,
        sweep_interval=settings.provided.webhook_cache_sweep_interval,
    )

    # Shared orchestration pieces
    retry_policy = providers.Singleton(
        RetryPolicy,
        base_delay=settings.provided.retry_base_delay,
        max_delay=settings.provided.retry_max_delay,
    )

    dead_letters = providers.Singleton(
        create_dead_letter_sink,
        enabled=settings.provided.dead_letter_enabled,
        capacity=settings.provided.dead_letter_capacity,
    )

    # Per-call timeouts are enforced by the queues
    http_client = providers.Singleton(
        httpx.AsyncClient,
        timeout=httpx.Timeout(60.0, connect=10.0),
    )

    circuit_breaker = providers.Singleton(
        create_circuit_breaker,
        enabled=settings.provided.circuit_breaker_enabled,
        threshold=settings.provided.circuit_breaker_threshold,
        reset_timeout=settings.provided.circuit_breaker_reset_timeout,
    )

    sheets_client = providers.Singleton(
        SheetsClient,
        client_email=settings.provided.google_sheets_client_email,
        private_key=settings.provided.google_sheets_private_key,
    )

    # Queues
    analysis_queue = providers.Singleton(
        AnalysisQueue,
        client=http_client,
        settings=settings,
        retry_policy=retry_policy,
        recorder=recorder,
        dead_letters=dead_letters,
    )

    sheets_queue = providers.Singleton(
        SheetsQueue,
        client=sheets_client,
        max_concurrent=settings.provided.sheets_concurrency,
        timeout=settings.provided.sheets_timeout,
        retry_policy=retry_policy,
        recorder=recorder,
        dead_letters=dead_letters,
    )

    webhook_queue = providers.Singleton(
        WebhookQueue,
        client=http_client,
        circuit_breaker=circuit_breaker,
        max_concurrent=settings.provided.webhook_concurrency,
        retry_policy=retry_policy,
        recorder=recorder,
        dead_letters=dead_letters,
    )

    # Services
    analysis_service = providers.Singleton(
        AnalysisService,
        queue=analysis_queue,
        cache=analysis_cache,
        recorder=recorder,
        settings=settings,
    )

    sheets_service = providers.Singleton(
        SheetsService,
        queue=sheets_queue,
        cache=sheets_cache,
        recorder=recorder,
        settings=settings,
    )

    webhook_service = providers.Singleton(
        WebhookService,
        queue=webhook_queue,
        cache=webhook_cache,
        recorder=recorder,
        settings=settings,
    )


# Global container instance
container = Container()
