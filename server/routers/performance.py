"""Health and performance monitoring routes."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Response

from core.container import container
from core.health import get_health_status, get_performance_health
from core.logging import get_logger
from services.analysis import AnalysisService
from services.orchestration import DeadLetterSinkProtocol
from services.sheets import SheetsService
from services.webhooks import WebhookService

logger = get_logger(__name__)
router = APIRouter(tags=["performance"])

NO_STORE = "no-cache, no-store, must-revalidate"


def get_analysis_service() -> AnalysisService:
    return container.analysis_service()


def get_sheets_service() -> SheetsService:
    return container.sheets_service()


def get_webhook_service() -> WebhookService:
    return container.webhook_service()


def get_dead_letters() -> DeadLetterSinkProtocol:
    return container.dead_letters()


def _system_health() -> Dict[str, Any]:
    return get_performance_health(
        caches=[container.analysis_cache(), container.sheets_cache(), container.webhook_cache()],
        queues=[container.analysis_queue(), container.sheets_queue(), container.webhook_queue()],
        recorder=container.recorder(),
        threshold=container.settings().health_score_threshold,
    )


def overall_score(analysis: Dict[str, Any], sheets: Dict[str, Any],
                  webhooks: Dict[str, Any], system: Dict[str, Any]) -> float:
    """Average of the per-collaborator scores and the system score."""
    webhook_rate = webhooks["success_rate"]
    scores = [
        1.0 if analysis["error_rate"] < 0.05 else 0.5,
        1.0 if sheets["error_rate"] < 0.05 else 0.5,
        1.0 if webhook_rate > 0.8 else webhook_rate,
        system["score"],
    ]
    return sum(scores) / len(scores)


@router.get("/health")
async def health_check(response: Response):
    """Liveness plus cache/queue health score."""
    response.headers["Cache-Control"] = NO_STORE
    return {
        "service": "minddump-orchestrator",
        "environment": "development" if container.settings().debug else "production",
        **get_health_status(_system_health()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/performance")
async def get_performance(
    response: Response,
    window: Optional[float] = Query(default=None, gt=0, description="Window in seconds"),
    analysis: AnalysisService = Depends(get_analysis_service),
    sheets: SheetsService = Depends(get_sheets_service),
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Collaborator statistics and the overall performance score."""
    system = _system_health()
    analysis_stats = analysis.get_performance_stats(window)
    sheets_stats = sheets.get_performance_stats(window)
    webhook_stats = webhooks.get_performance_stats(window)

    score = overall_score(analysis_stats, sheets_stats, webhook_stats, system)
    healthy = score > container.settings().health_score_threshold

    response.headers["Cache-Control"] = NO_STORE
    response.headers["X-Performance-Score"] = f"{score:.3f}"
    response.headers["X-System-Health"] = "healthy" if healthy else "degraded"

    return {
        "analysis": analysis_stats,
        "sheets": sheets_stats,
        "webhooks": webhook_stats,
        "overall": {
            "healthy": healthy,
            "score": score,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        "system": {
            "cache_stats": system["cache_stats"],
            "queue_stats": system["queue_stats"],
            "monitor_stats": system["monitor_stats"],
        },
        "metadata": {
            "version": "2.0",
            "components": ["analysis", "sheets", "webhooks", "system"],
        },
    }


@router.get("/performance/dead-letters")
async def list_dead_letters(
    queue: Optional[str] = None,
    dead_letters: DeadLetterSinkProtocol = Depends(get_dead_letters),
):
    """Requests dropped after exhausting their retries."""
    return {
        "stats": dead_letters.get_stats(),
        "entries": [entry.to_dict() for entry in dead_letters.entries(queue)],
    }


@router.delete("/performance/dead-letters")
async def purge_dead_letters(
    queue: Optional[str] = None,
    dead_letters: DeadLetterSinkProtocol = Depends(get_dead_letters),
):
    """Purge dead letters, optionally for a single queue."""
    purged = dead_letters.clear(queue)
    return {"success": True, "purged": purged, "queue": queue}


@router.post("/performance/validate/sheets")
async def validate_sheets(sheets: SheetsService = Depends(get_sheets_service)):
    """Check Google Sheets credentials and master sheet access."""
    return await sheets.validate_access()


@router.post("/performance/validate/webhooks")
async def validate_webhooks(webhooks: WebhookService = Depends(get_webhook_service)):
    """Send a test payload to every configured webhook."""
    return await webhooks.validate()


@router.post("/performance/webhooks/flush")
async def flush_webhooks(
    timeout: float = Query(default=30.0, gt=0, le=300),
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Wait for queued webhook deliveries to settle."""
    result = await webhooks.flush(timeout)
    logger.info("Webhook queue flushed", **result)
    return result
