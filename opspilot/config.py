"""Centralized configuration for OpsPilot.

Typed constants for database, routing, search and outbound-call settings.
Environment variable overrides use safe defaults so the engine starts without
extra env configuration. Learning and anomaly tuning lives in
config/opspilot_policy.yaml (see opspilot.runtime.policy).
"""

from __future__ import annotations

import os

# --- App ---
APP_VERSION: str = "0.1.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("OPSPILOT_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("OPSPILOT_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("OPSPILOT_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("OPSPILOT_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("OPSPILOT_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("OPSPILOT_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("OPSPILOT_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("OPSPILOT_DB_RETRY_JITTER", "0.1"))

# --- Routing tiers ---
PATTERN_CONFIDENCE_HIGH: float = float(os.getenv("PATTERN_CONFIDENCE_HIGH", "0.95"))
PATTERN_CONFIDENCE_MEDIUM: float = float(os.getenv("PATTERN_CONFIDENCE_MEDIUM", "0.75"))
PATTERN_CONFIDENCE_LOW: float = float(os.getenv("PATTERN_CONFIDENCE_LOW", "0.50"))
PATTERN_TIMEOUT_MS: int = int(os.getenv("PATTERN_TIMEOUT_MS", "30000"))

# --- Pattern search ---
SEARCH_MAX_WORKERS: int = int(os.getenv("OPSPILOT_SEARCH_MAX_WORKERS", "4"))
SEARCH_MODULE_TIMEOUT: float = float(os.getenv("OPSPILOT_SEARCH_MODULE_TIMEOUT", "2.0"))
SEARCH_STORE_LIMIT: int = 10
SEARCH_MODULE_LIMIT: int = 20
PATTERN_RECENCY_DAYS: int = 90

# --- Outbound calls ---
API_CALL_TIMEOUT_SECONDS: float = float(os.getenv("OPSPILOT_API_CALL_TIMEOUT", "10"))
