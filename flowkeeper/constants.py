"""Shared constants for flowkeeper."""

MAX_CONDITIONS_PER_PATH = 10
MIN_BRANCH_PATHS = 2
MIN_DECISION_OUTCOMES = 2

ROOT_CURSOR = "root"
DEFAULT_MAX_AUTO_TRANSITIONS = 500
DEFAULT_NOTIFICATION_QUEUE = "flowkeeper:notifications"
