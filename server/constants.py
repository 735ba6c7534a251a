"""Centralized constants for collaborator names, categories and sheet layout.

This module provides a single source of truth for strings shared between the
services, the health surface and the tests.
"""

from typing import FrozenSet, Tuple

# =============================================================================
# COLLABORATORS (queue names double as metric prefixes)
# =============================================================================

ANALYSIS_QUEUE = "analysis"
SHEETS_QUEUE = "sheets"
WEBHOOK_QUEUE = "webhook"

USER_AGENT = "MindDump-Orchestrator/2.0"

# =============================================================================
# THOUGHT CATEGORIES (webhook routing keys)
# =============================================================================

THOUGHT_CATEGORIES: FrozenSet[str] = frozenset([
    'Goal',
    'Habit',
    'ProjectIdea',
    'Task',
    'Reminder',
    'Note',
    'Insight',
    'Learning',
    'Career',
    'Metric',
    'Idea',
    'System',
    'Automation',
    'Person',
    'Sensitive',
])

# Categories that also get their own project spreadsheet
PROJECT_CATEGORIES: FrozenSet[str] = frozenset([
    'ProjectIdea',
])

# =============================================================================
# SPREADSHEET LAYOUT
# =============================================================================

MASTER_SHEET_HEADERS: Tuple[str, ...] = (
    'Raw Input',
    'Category',
    'Subcategory',
    'Priority',
    'Expanded Text',
    'Timestamp',
)

PROJECT_SHEET_HEADERS: Tuple[str, ...] = (
    'Timestamp',
    'Original Idea',
    'Expanded Description',
    'Category',
    'Priority',
    'Tags',
    'Actions',
    'Status',
    'Notes',
)

# Destination key for operations that create a new spreadsheet
NEW_SPREADSHEET_DESTINATION = "__new_spreadsheet__"

# =============================================================================
# ANALYSIS INPUT LIMITS
# =============================================================================

MAX_ANALYSIS_INPUT_CHARS = 50000
