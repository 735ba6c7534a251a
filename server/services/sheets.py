"""Google Sheets logging with per-spreadsheet batching.

Every thought is appended to a master log sheet. Appends for the same
spreadsheet arriving within a few seconds are merged into one API call by the
batcher, and every merged call goes through the sheets request queue for
bounded concurrency and retry.

API Reference: https://developers.google.com/workspace/sheets/api/reference/rest
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from google.oauth2 import service_account
from googleapiclient.discovery import build

from constants import (
    MASTER_SHEET_HEADERS,
    NEW_SPREADSHEET_DESTINATION,
    PROJECT_CATEGORIES,
    PROJECT_SHEET_HEADERS,
    SHEETS_QUEUE,
)
from core.cache import ExpiringCache
from core.config import Settings
from core.instrumentation import with_cache, with_timing
from core.logging import get_logger, log_api_call
from core.metrics import PerformanceRecorder
from services.orchestration import (
    BatchedOperation,
    BoundedRequestQueue,
    MergedBatch,
    OperationKind,
    PermanentError,
    Priority,
    QueuedRequest,
    RequestBatcher,
)

logger = get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
TOKEN_URI = "https://oauth2.googleapis.com/token"

HEADER_FORMAT = {
    "backgroundColor": {"red": 0.9, "green": 0.9, "blue": 0.9},
    "textFormat": {"bold": True},
}
PROJECT_TAB_COLOR = {"red": 0.27, "green": 0.71, "blue": 0.82}


def spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


def header_range(data_range: str) -> str:
    """First row of an A1 column range: ``Master Log!A:F`` -> ``Master Log!A1:F1``."""
    sheet, _, columns = data_range.rpartition("!")
    start, _, end = columns.partition(":")
    cells = f"{start}1:{end or start}1"
    return f"{sheet}!{cells}" if sheet else cells


# =============================================================================
# MODELS
# =============================================================================

@dataclass
class MasterSheetEntry:
    """One row of the master log."""
    raw_input: str
    category: str
    subcategory: Optional[str] = None
    priority: Optional[str] = None
    expanded_text: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_row(self) -> List[str]:
        return [
            self.raw_input,
            self.category,
            self.subcategory or "",
            self.priority or "",
            self.expanded_text or "",
            self.timestamp,
        ]


@dataclass
class ProjectSheetOptions:
    title: str
    category: str
    priority: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    expanded_text: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_project(self) -> bool:
        return self.category.lower() in {c.lower() for c in PROJECT_CATEGORIES}

    def initial_row(self) -> List[str]:
        return [
            datetime.now(timezone.utc).isoformat(),
            self.title,
            self.expanded_text or "",
            self.category,
            self.priority or "medium",
            ", ".join(self.tags),
            "; ".join(self.actions),
            "Active",
            self.description or "",
        ]


@dataclass
class HeaderCheck:
    """Queue payload: write ``headers`` to ``range`` if the row is empty."""
    spreadsheet_id: str
    range: str
    headers: Tuple[str, ...]


# =============================================================================
# CLIENT
# =============================================================================

class SheetsClient:
    """Async facade over the blocking googleapiclient Sheets v4 resource.

    Each call runs in the default executor so the event loop is never blocked.
    """

    def __init__(self, client_email: Optional[str], private_key: Optional[str]):
        self.client_email = client_email
        self.private_key = private_key
        self._service = None

    def _sheets(self):
        if self._service is None:
            if not (self.client_email and self.private_key):
                raise PermanentError("Google Sheets credentials not configured")
            creds = service_account.Credentials.from_service_account_info(
                {
                    "type": "service_account",
                    "client_email": self.client_email,
                    "private_key": self.private_key,
                    "token_uri": TOKEN_URI,
                },
                scopes=SCOPES,
            )
            self._service = build("sheets", "v4", credentials=creds, cache_discovery=False)
        return self._service

    async def _run(self, call: Callable[[Any], Any]) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: call(self._sheets()))

    async def get_values(self, spreadsheet_id: str, range_: str) -> List[List[Any]]:
        result = await self._run(lambda s: s.spreadsheets().values().get(
            spreadsheetId=spreadsheet_id, range=range_,
        ).execute())
        return result.get("values", [])

    async def update_values(self, spreadsheet_id: str, range_: str,
                            values: List[List[Any]]) -> Dict[str, Any]:
        return await self._run(lambda s: s.spreadsheets().values().update(
            spreadsheetId=spreadsheet_id,
            range=range_,
            valueInputOption="RAW",
            body={"values": values},
        ).execute())

    async def append_rows(self, spreadsheet_id: str, range_: str,
                          rows: List[List[Any]]) -> Dict[str, Any]:
        return await self._run(lambda s: s.spreadsheets().values().append(
            spreadsheetId=spreadsheet_id,
            range=range_,
            valueInputOption="RAW",
            body={"values": rows},
        ).execute())

    async def batch_update_values(self, spreadsheet_id: str,
                                  data: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._run(lambda s: s.spreadsheets().values().batchUpdate(
            spreadsheetId=spreadsheet_id,
            body={"valueInputOption": "RAW", "data": data},
        ).execute())

    async def batch_update(self, spreadsheet_id: str,
                           requests: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._run(lambda s: s.spreadsheets().batchUpdate(
            spreadsheetId=spreadsheet_id,
            body={"requests": requests},
        ).execute())

    async def create_spreadsheet(self, title: str, sheet_title: str,
                                 tab_color: Optional[Dict[str, float]] = None) -> str:
        properties: Dict[str, Any] = {"title": sheet_title}
        if tab_color:
            properties["tabColor"] = tab_color
        result = await self._run(lambda s: s.spreadsheets().create(
            body={"properties": {"title": title}, "sheets": [{"properties": properties}]},
        ).execute())
        return result["spreadsheetId"]


# =============================================================================
# QUEUE
# =============================================================================

class SheetsQueue(BoundedRequestQueue):
    """Executes merged spreadsheet writes and header checks."""

    def __init__(self, client: SheetsClient, **kwargs):
        kwargs.setdefault("max_concurrent", 3)
        kwargs.setdefault("timeout", 15.0)
        super().__init__(SHEETS_QUEUE, **kwargs)
        self.client = client

    async def process_request(self, request: QueuedRequest) -> Any:
        payload = request.payload
        if isinstance(payload, HeaderCheck):
            return await self._ensure_header(payload)
        if isinstance(payload, MergedBatch):
            return await self._execute_batch(payload)
        raise PermanentError(f"Unsupported sheets payload: {type(payload).__name__}")

    async def _execute_batch(self, batch: MergedBatch) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "destination": batch.destination_key,
            "appended_rows": 0,
            "updated_ranges": 0,
            "created": {},
        }

        if batch.appends:
            rows = batch.append_rows
            await self.client.append_rows(batch.destination_key, batch.append_range, rows)
            summary["appended_rows"] = len(rows)

        if batch.updates:
            await self.client.batch_update_values(batch.destination_key, batch.update_data)
            summary["updated_ranges"] = len(batch.updates)

        # Creates need their own spreadsheet each
        for op in batch.creates:
            summary["created"][op.id] = await self._create_project_sheet(op)

        log_api_call(logger, "google_sheets", "batch", True,
                     destination=batch.destination_key, size=batch.size)
        return summary

    async def _ensure_header(self, check: HeaderCheck) -> bool:
        existing = await self.client.get_values(check.spreadsheet_id, check.range)
        if existing:
            return False

        await self.client.update_values(check.spreadsheet_id, check.range, [list(check.headers)])
        await self.client.batch_update(check.spreadsheet_id, [{
            "repeatCell": {
                "range": {"sheetId": 0, "startRowIndex": 0, "endRowIndex": 1},
                "cell": {"userEnteredFormat": HEADER_FORMAT},
                "fields": "userEnteredFormat(backgroundColor,textFormat)",
            },
        }])
        logger.info("Wrote sheet headers", spreadsheet_id=check.spreadsheet_id, range=check.range)
        return True

    async def _create_project_sheet(self, op: BatchedOperation) -> str:
        title = op.options.get("title", "Untitled")
        headers = list(op.options.get("headers", PROJECT_SHEET_HEADERS))
        spreadsheet_id = await self.client.create_spreadsheet(
            title=f"MindDump: {title}",
            sheet_title="Project Details",
            tab_color=PROJECT_TAB_COLOR,
        )

        rows = [
            {"values": [
                {"userEnteredValue": {"stringValue": h}, "userEnteredFormat": HEADER_FORMAT}
                for h in headers
            ]},
        ]
        rows.extend(
            {"values": [{"userEnteredValue": {"stringValue": str(v)}} for v in row]}
            for row in op.values
        )
        await self.client.batch_update(spreadsheet_id, [
            {
                "updateCells": {
                    "range": {
                        "sheetId": 0,
                        "startRowIndex": 0,
                        "endRowIndex": len(rows),
                        "startColumnIndex": 0,
                        "endColumnIndex": len(headers),
                    },
                    "rows": rows,
                    "fields": "userEnteredValue,userEnteredFormat",
                },
            },
            {"autoResizeDimensions": {"dimensions": {"sheetId": 0, "dimension": "COLUMNS"}}},
        ])

        self.recorder.record("project_sheet_created", 1,
                             {"category": op.options.get("category", "unknown")})
        return spreadsheet_url(spreadsheet_id)


# =============================================================================
# SERVICE
# =============================================================================

class SheetsService:
    """Master-sheet logging and project-sheet creation."""

    def __init__(self, queue: SheetsQueue, cache: ExpiringCache,
                 recorder: PerformanceRecorder, settings: Settings):
        self.queue = queue
        self.cache = cache
        self.recorder = recorder
        self.settings = settings
        self.batcher = RequestBatcher(
            SHEETS_QUEUE,
            self._submit_batch,
            batch_size=settings.sheets_batch_size,
            max_wait=settings.sheets_batch_max_wait,
            recorder=recorder,
        )
        self._background: Set[asyncio.Task] = set()

    @property
    def configured(self) -> bool:
        return self.settings.sheets_configured

    async def _submit_batch(self, destination_key: str,
                            operations: List[BatchedOperation]) -> Dict[str, Any]:
        merged = MergedBatch.from_operations(destination_key, operations)
        # Someone is waiting on the URL of a new spreadsheet
        priority = Priority.HIGH if merged.creates else Priority.MEDIUM
        return await self.queue.add(QueuedRequest(
            payload=merged,
            priority=priority,
            max_retries=self.settings.sheets_max_retries,
        ))

    async def ensure_master_header(self) -> bool:
        """Verify the master sheet header at most once per hour."""
        sheet_id = self.settings.master_sheet_id
        check = HeaderCheck(
            spreadsheet_id=sheet_id,
            range=header_range(self.settings.master_sheet_range),
            headers=MASTER_SHEET_HEADERS,
        )

        async def _check() -> bool:
            await self.queue.add(QueuedRequest(
                payload=check,
                priority=Priority.HIGH,
                max_retries=self.settings.sheets_max_retries,
            ))
            return True

        return await with_cache(f"master_sheet_initialized:{sheet_id}", _check,
                                self.cache, ttl=3600, recorder=self.recorder)

    def _append(self, rows: List[List[Any]]) -> BatchedOperation:
        return BatchedOperation(
            destination_key=self.settings.master_sheet_id,
            kind=OperationKind.APPEND,
            values=rows,
            range=self.settings.master_sheet_range,
        )

    async def log_entry(self, entry: MasterSheetEntry) -> bool:
        """Append one entry to the master sheet.

        Returns:
            False when no master sheet is configured, True once the row is written
        """
        if not self.configured:
            logger.warning("Master sheet not configured, skipping sheet logging")
            return False

        async def _log() -> None:
            await self.ensure_master_header()
            await self.batcher.queue_operation(self._append([entry.to_row()]))
            self.recorder.record("master_sheet_log_queued", 1, {"category": entry.category})

        await with_timing(_log, "master_sheet_log_duration",
                          {"category": entry.category}, recorder=self.recorder)
        return True

    async def log_entries(self, entries: List[MasterSheetEntry]) -> bool:
        """Append several entries as one multi-row operation."""
        if not self.configured:
            logger.warning("Master sheet not configured, skipping batch logging")
            return False
        if not entries:
            return True

        async def _log() -> None:
            await self.ensure_master_header()
            await self.batcher.queue_operation(self._append([e.to_row() for e in entries]))
            self.recorder.record("master_sheet_batch_log_queued", len(entries))

        await with_timing(_log, "master_sheet_batch_log_duration",
                          {"batch_size": len(entries)}, recorder=self.recorder)
        return True

    def log_entry_in_background(self, entry: MasterSheetEntry) -> asyncio.Task:
        """Detach ``log_entry`` from the caller; failures are logged only."""
        task = asyncio.create_task(self.log_entry(entry))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background sheet operation failed", error=str(error))

    async def create_sheet_within(self, options: ProjectSheetOptions,
                                  timeout: float) -> Optional[str]:
        """``create_sheet`` bounded by ``timeout`` seconds.

        On timeout the creation keeps running detached and None is returned.
        """
        task = asyncio.create_task(self.create_sheet(options))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            self.recorder.record("sheet_creation_timeout", 1)
            logger.warning("Project sheet creation timed out, continuing in background",
                           title=options.title, timeout=timeout)
            return None

    async def create_sheet(self, options: ProjectSheetOptions) -> str:
        """Log to the master sheet and, for project ideas, create a project spreadsheet.

        Returns:
            The new spreadsheet URL, or a confirmation message for non-project categories
        """
        async def _create() -> str:
            await self.log_entry(MasterSheetEntry(
                raw_input=options.title,
                category=options.category[:1].upper() + options.category[1:],
                subcategory=options.tags[0] if options.tags else None,
                priority=options.priority.capitalize() if options.priority else None,
                expanded_text=options.expanded_text,
            ))

            if not options.is_project:
                return f"Logged to master sheet: {options.category} - {options.title}"

            op = BatchedOperation(
                destination_key=NEW_SPREADSHEET_DESTINATION,
                kind=OperationKind.CREATE,
                values=[options.initial_row()],
                options={
                    "title": options.title,
                    "category": options.category,
                    "headers": PROJECT_SHEET_HEADERS,
                },
            )
            summary = await self.batcher.queue_operation(op)
            return summary["created"][op.id]

        return await with_timing(_create, "sheet_creation_duration", {
            "category": options.category,
            "is_project": options.is_project,
        }, recorder=self.recorder)

    async def validate_access(self) -> Dict[str, Any]:
        """Check credentials and master sheet access."""
        start = time.perf_counter()
        try:
            if not self.configured:
                raise PermanentError("Google Sheets not configured")
            await self.ensure_master_header()
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            self.recorder.record("sheets_validation_error", duration_ms)
            logger.warning("Sheets validation failed", error=str(e))
            return {"success": False, "validation_time": duration_ms, "error": str(e)}

        duration_ms = (time.perf_counter() - start) * 1000
        self.recorder.record("sheets_validation_success", duration_ms)
        return {
            "success": True,
            "validation_time": duration_ms,
            "cache_stats": self.cache.get_stats(),
        }

    async def stop(self) -> None:
        await self.batcher.stop()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def get_performance_stats(self, window: Optional[float] = None) -> Dict[str, Any]:
        window = window if window is not None else self.settings.metrics_window
        recorder = self.recorder

        successes = recorder.count("sheets_batch_success", window)
        errors = recorder.count("sheets_batch_error", window)
        return {
            "batch_operations": successes,
            "average_processing_time": recorder.get_average("sheets_batch_processing", window),
            "cache_hit_rate": recorder.rate(
                "cache_hit", "cache_miss", window,
                tag_filter=lambda m: "sheet" in m.tags.get("key", ""),
            ),
            "error_rate": errors / (successes + errors) if successes + errors else 0.0,
            "queue_stats": self.queue.get_stats(),
            "batcher_stats": self.batcher.get_stats(),
        }
