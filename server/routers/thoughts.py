"""Thought intake route.

Analysis is awaited; master-sheet logging and webhook delivery are detached
from the response. Only project ideas wait for their spreadsheet, and at most
for the Sheets timeout.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from constants import MAX_ANALYSIS_INPUT_CHARS
from core.container import container
from core.logging import get_logger
from services.analysis import AnalysisService
from services.orchestration import PermanentError
from services.sheets import MasterSheetEntry, ProjectSheetOptions, SheetsService
from services.webhooks import WebhookService

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["thoughts"])


class ThoughtRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=MAX_ANALYSIS_INPUT_CHARS)
    category: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None


def get_analysis_service() -> AnalysisService:
    return container.analysis_service()


def get_sheets_service() -> SheetsService:
    return container.sheets_service()


def get_webhook_service() -> WebhookService:
    return container.webhook_service()


def _capitalize(value: Optional[str]) -> Optional[str]:
    return value.capitalize() if value else None


@router.post("/thoughts")
async def create_thought(
    request: ThoughtRequest,
    analysis_service: AnalysisService = Depends(get_analysis_service),
    sheets: SheetsService = Depends(get_sheets_service),
    webhooks: WebhookService = Depends(get_webhook_service),
):
    """Analyze a thought, log it and fan it out to its category webhook."""
    category = None if request.category in (None, "auto-detect") else request.category

    if request.analysis is not None:
        if not (request.analysis.get("category") or request.analysis.get("type")):
            raise HTTPException(status_code=400,
                                detail="Analysis must include a category or type field")
        analysis = request.analysis
    else:
        if not analysis_service.settings.anthropic_api_key:
            raise HTTPException(status_code=503, detail="Analysis API not configured")
        try:
            analysis = await analysis_service.analyze(request.text, category)
        except PermanentError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.error("Thought analysis failed", error=str(e))
            raise HTTPException(status_code=503, detail="Failed to analyze thought")

    thought = {
        "id": f"thought_{uuid.uuid4().hex[:12]}",
        "raw_text": request.text,
        "category": analysis.get("category") or "Uncategorized",
        "type": analysis.get("type"),
        "subcategory": analysis.get("subcategory"),
        "priority": analysis.get("priority"),
        "title": analysis.get("title"),
        "summary": analysis.get("summary"),
        "expanded_text": analysis.get("expandedThought"),
        "actions": analysis.get("actions") or [],
        "urgency": analysis.get("urgency"),
        "sentiment": analysis.get("sentiment"),
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    sheets_url = None
    is_project = thought["category"] == "ProjectIdea" or thought["type"] == "project"
    if is_project and thought["title"]:
        # create_sheet also writes the master log row. Any project is filed as ProjectIdea.
        try:
            sheets_url = await sheets.create_sheet_within(ProjectSheetOptions(
                title=thought["title"],
                category="ProjectIdea",
                priority=thought["priority"],
                actions=list(thought["actions"]),
                expanded_text=thought["expanded_text"],
                description=thought["summary"],
            ), timeout=sheets.settings.sheets_timeout)
        except Exception as e:
            logger.warning("Project sheet creation failed", error=str(e))
    else:
        sheets.log_entry_in_background(MasterSheetEntry(
            raw_input=request.text,
            category=thought["category"],
            subcategory=thought["subcategory"],
            priority=_capitalize(thought["priority"]),
            expanded_text=thought["expanded_text"],
        ))

    webhook_queued = webhooks.send_thought(request.text, analysis) is not None

    return {
        "success": True,
        "thought": thought,
        "integrations": {
            "sheets_url": sheets_url,
            "webhook_queued": webhook_queued,
        },
    }
