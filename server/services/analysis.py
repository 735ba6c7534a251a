"""Thought analysis through the Anthropic Messages API.

Calls go through a bounded queue (3 concurrent by default) at high priority
and are cached for 24 hours by content hash, so re-submitting the same thought
never reaches the API twice within a cache period.
"""

import asyncio
import hashlib
import json
from collections import Counter
from typing import Any, Dict, List, Optional

import httpx

from constants import ANALYSIS_QUEUE, MAX_ANALYSIS_INPUT_CHARS, THOUGHT_CATEGORIES, USER_AGENT
from core.cache import ExpiringCache
from core.config import Settings
from core.instrumentation import with_cache, with_timing
from core.logging import get_logger, log_api_call
from core.metrics import PerformanceRecorder
from services.orchestration import BoundedRequestQueue, PermanentError, Priority, QueuedRequest

logger = get_logger(__name__)

UNCATEGORIZED = "Uncategorized"

CATEGORY_ALIASES: Dict[str, List[str]] = {
    "Goal": ["objective", "target", "aim"],
    "Habit": ["routine", "behavior", "practice"],
    "ProjectIdea": ["project", "app", "tool", "business"],
    "Task": ["todo", "action", "item"],
    "Reminder": ["schedule", "appointment", "meeting"],
    "Note": ["info", "information", "memo"],
    "Insight": ["realization", "discovery", "reflection"],
    "Learning": ["study", "research", "course"],
    "Career": ["job", "work", "professional"],
    "Metric": ["tracking", "measurement", "data"],
    "Idea": ["concept", "thought", "brainstorm"],
    "System": ["workflow", "process", "framework"],
    "Automation": ["bot", "script", "automated"],
    "Person": ["contact", "people", "relationship"],
    "Sensitive": ["private", "personal", "confidential"],
    UNCATEGORIZED: ["other", "misc", "general"],
}

# Older clients still route on the coarse type
LEGACY_TYPES: Dict[str, str] = {
    "Goal": "task",
    "Habit": "task",
    "ProjectIdea": "project",
    "Task": "task",
    "Reminder": "task",
    "Note": "reflection",
    "Insight": "reflection",
    "Learning": "reflection",
    "Career": "task",
    "Metric": "reflection",
    "Idea": "idea",
    "System": "project",
    "Automation": "project",
    "Person": "reflection",
    "Sensitive": "vent",
    UNCATEGORIZED: "reflection",
}

LEVELS = ("low", "medium", "high")
SENTIMENTS = ("positive", "neutral", "negative")

DEFAULT_PROMPT = f"""You are a personal AI assistant. Analyze this thought and respond with valid JSON only.

Categories: {', '.join(sorted(THOUGHT_CATEGORIES))}, {UNCATEGORIZED}

Response format:
{{
  "category": "string",
  "subcategory": "string",
  "priority": "low|medium|high",
  "title": "string",
  "summary": "string",
  "actions": ["string"],
  "expandedThought": "string",
  "urgency": "low|medium|high",
  "sentiment": "positive|neutral|negative"
}}"""


def _anthropic_headers(api_key: str) -> dict:
    return {
        'x-api-key': api_key,
        'anthropic-version': '2023-06-01',
        'User-Agent': USER_AGENT,
    }


def _build_category_mapping() -> Dict[str, str]:
    mapping = {}
    for category, aliases in CATEGORY_ALIASES.items():
        mapping[category.lower()] = category
        for alias in aliases:
            mapping[alias] = category
    return mapping


CATEGORY_MAPPING = _build_category_mapping()


# =============================================================================
# INPUT / OUTPUT SANITIZATION
# =============================================================================

def sanitize_input(text: str) -> str:
    """Strip, drop angle brackets and cap the input length."""
    return text.strip().replace("<", "").replace(">", "")[:MAX_ANALYSIS_INPUT_CHARS]


def analysis_cache_key(sanitized_text: str, category: Optional[str] = None) -> str:
    digest = hashlib.sha256(sanitized_text.encode("utf-8")).hexdigest()[:32]
    return f"thought_analysis:{digest}:{category or 'auto'}"


def resolve_category(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return CATEGORY_MAPPING.get(value.strip().lower())


def sanitize_analysis(raw: Dict[str, Any], preselected: Optional[str] = None) -> Dict[str, Any]:
    """Clamp a model response to the known categories, enums and field lengths.

    A valid preselected category always wins over the model's choice.
    """
    category = resolve_category(preselected) or resolve_category(raw.get("category")) or UNCATEGORIZED

    summary = raw.get("summary") if isinstance(raw.get("summary"), str) else ""
    expanded = raw.get("expandedThought")
    actions = raw.get("actions") if isinstance(raw.get("actions"), list) else []

    return {
        "category": category,
        "subcategory": raw["subcategory"][:100] if isinstance(raw.get("subcategory"), str) else None,
        "priority": raw.get("priority") if raw.get("priority") in LEVELS else "medium",
        "title": raw["title"][:200] if isinstance(raw.get("title"), str) else "Untitled",
        "summary": summary[:1000],
        "actions": [str(action)[:500] for action in actions[:20]],
        "expandedThought": (
            expanded[:10000] if isinstance(expanded, str) else summary or "No additional details."
        ),
        "urgency": raw.get("urgency") if raw.get("urgency") in LEVELS else "medium",
        "sentiment": raw.get("sentiment") if raw.get("sentiment") in SENTIMENTS else "neutral",
        "type": LEGACY_TYPES.get(category, "reflection"),
    }


# =============================================================================
# QUEUE
# =============================================================================

class AnalysisQueue(BoundedRequestQueue):
    """Sends one Messages API request per queued prompt and parses the JSON reply."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings, **kwargs):
        kwargs.setdefault("max_concurrent", settings.analysis_concurrency)
        kwargs.setdefault("timeout", settings.analysis_timeout)
        super().__init__(ANALYSIS_QUEUE, **kwargs)
        self.client = client
        self.settings = settings

    async def process_request(self, request: QueuedRequest) -> Dict[str, Any]:
        response = await self.client.post(
            self.settings.anthropic_api_url,
            json={
                "model": self.settings.analysis_model,
                "max_tokens": self.settings.analysis_max_tokens,
                "temperature": 0.1,
                "messages": [{"role": "user", "content": request.payload}],
            },
            headers=_anthropic_headers(self.settings.anthropic_api_key or ""),
        )
        response.raise_for_status()
        log_api_call(logger, "anthropic", "messages", True,
                     request_id=request.id, attempt=request.attempt)
        return self._parse(response)

    def _parse(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
            block = (data.get("content") or [{}])[0]
        except (ValueError, AttributeError) as e:
            self.recorder.record("claude_parse_error", 1)
            raise PermanentError(f"Malformed response from analysis API: {e}") from e

        if not isinstance(block, dict) or block.get("type") != "text":
            self.recorder.record("claude_parse_error", 1)
            raise PermanentError("Unexpected response type from analysis API")

        try:
            analysis = json.loads(block.get("text", ""))
        except json.JSONDecodeError as e:
            self.recorder.record("claude_parse_error", 1)
            raise PermanentError("Invalid JSON response from analysis API") from e

        if not isinstance(analysis, dict):
            self.recorder.record("claude_parse_error", 1)
            raise PermanentError("Analysis response is not a JSON object")
        return analysis


# =============================================================================
# SERVICE
# =============================================================================

class AnalysisService:
    """Cached, timed, queue-backed thought analysis."""

    def __init__(self, queue: AnalysisQueue, cache: ExpiringCache,
                 recorder: PerformanceRecorder, settings: Settings,
                 prompt: str = DEFAULT_PROMPT):
        self.queue = queue
        self.cache = cache
        self.recorder = recorder
        self.settings = settings
        self.prompt = prompt

    async def analyze(self, text: str, category: Optional[str] = None) -> Dict[str, Any]:
        """Analyze a raw thought.

        Args:
            text: Raw user input
            category: Optional preselected category; overrides the model's choice

        Returns:
            Sanitized analysis dict

        Raises:
            PermanentError: Empty input, missing API key or unusable response
            TerminalFailure: The API kept failing transiently
        """
        if not isinstance(text, str) or not text:
            raise PermanentError("Invalid input: text must be a non-empty string")
        if not self.settings.anthropic_api_key:
            raise PermanentError("Analysis API key not configured")

        sanitized = sanitize_input(text)
        if not sanitized:
            raise PermanentError("Input text is empty after sanitization")

        key = analysis_cache_key(sanitized, category)
        tags = {"text_length": len(sanitized), "cached": key in self.cache}

        async def _call_api() -> Dict[str, Any]:
            self.recorder.record("claude_api_call", 1, {
                "text_length": len(sanitized),
                "has_category": category is not None,
            })
            raw = await self.queue.add(QueuedRequest(
                payload=f'{self.prompt}\n\nUser thought: "{sanitized}"',
                priority=Priority.HIGH,
                max_retries=self.settings.analysis_max_retries,
            ))
            analysis = sanitize_analysis(raw, category)
            self.recorder.record("claude_analysis_success", 1, {"category": analysis["category"]})
            return analysis

        return await with_timing(
            lambda: with_cache(key, _call_api, self.cache,
                               self.settings.analysis_cache_ttl, self.recorder),
            "claude_analysis_duration",
            tags,
            recorder=self.recorder,
        )

    async def analyze_many(self, thoughts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Analyze several thoughts concurrently; failed items are left out."""
        results = await asyncio.gather(
            *(self.analyze(t["text"], t.get("category")) for t in thoughts),
            return_exceptions=True,
        )
        analyzed = []
        for thought, result in zip(thoughts, results):
            if isinstance(result, BaseException):
                logger.warning("Thought analysis failed", thought_id=thought.get("id"),
                               error=str(result))
                continue
            analyzed.append({"id": thought.get("id"), "analysis": result})
        return analyzed

    def get_performance_stats(self, window: Optional[float] = None) -> Dict[str, Any]:
        window = window if window is not None else self.settings.metrics_window
        recorder = self.recorder

        errors = (recorder.count("claude_parse_error", window)
                  + recorder.count("claude_analysis_duration_error", window))
        attempts = recorder.count("claude_analysis_success", window) + errors

        categories = Counter(
            m.tags.get("category", "unknown")
            for m in recorder.get_metrics("claude_analysis_success", window)
        )

        return {
            "api_calls": recorder.count("claude_api_call", window),
            "average_response_time": recorder.get_average("claude_analysis_duration", window),
            "cache_hit_rate": recorder.rate(
                "cache_hit", "cache_miss", window,
                tag_filter=lambda m: m.tags.get("cache") == self.cache.name,
            ),
            "error_rate": errors / attempts if attempts else 0.0,
            "top_categories": [
                {"category": name, "count": count} for name, count in categories.most_common(5)
            ],
            "queue_stats": self.queue.get_stats(),
            "cache_stats": self.cache.get_stats(),
        }
