"""
Central constants for the document acknowledgment engine.
"""
from __future__ import annotations

# Content edits re-trigger acknowledgment when the absolute length delta is
# strictly greater than this share of the previous version's length.
REACKNOWLEDGMENT_CONTENT_THRESHOLD = 0.1

# Words per minute used for estimated_reading_time.
AVERAGE_READING_SPEED = 200

MAX_CONTENT_LENGTH = 1_000_000
# Column widths of documents.title / documents.folder_path.
MAX_TITLE_LENGTH = 255
MAX_FOLDER_PATH_LENGTH = 512

DEFAULT_FOLDER_PATH = "/"

INITIAL_VERSION_SUMMARY = "Initial version"
MINOR_UPDATES_SUMMARY = "Minor updates"
FALLBACK_CHANGE_SUMMARY = "Document updated"

RECENT_ACKNOWLEDGMENT_DAYS = 30
RECENT_ACKNOWLEDGMENT_LIMIT = 50
MAX_ACKNOWLEDGMENT_WINDOW_DAYS = 365

# Notification entity types emitted by the engine
NOTIFY_REACKNOWLEDGMENT_REQUIRED = "document.requires_reacknowledgment"
NOTIFY_DOCUMENT_ACKNOWLEDGED = "document.acknowledged"
NOTIFY_DOCUMENT_FULLY_ACKNOWLEDGED = "document.fully_acknowledged"
NOTIFY_ACKNOWLEDGMENT_REMINDER = "document.acknowledgment_reminder"
