"""Hardcoded default configuration values."""

from __future__ import annotations

from typing import Any

DEFAULT_CONFIG: dict[str, Any] = {
    "app_name": "scrapearr",
    "environment": "dev",
    "http": {
        "timeout_seconds": 30.0,
        "follow_redirects": True,
        "user_agent": "Scrapearr/0.1.0",
    },
    "logging": {
        "level": "INFO",
        "format": None,  # Derived from environment in schema.py
    },
    "cache": {
        "dir": "./.cache/scrapearr",
        "max_concurrent": 10,
    },
    "sandbox": {
        "invocation_timeout_seconds": 60.0,
        "fetch_timeout_seconds": 30.0,
        "max_response_bytes": 5 * 1024 * 1024,
        "max_script_bytes": 5 * 1024 * 1024,
    },
    "aggregator": {
        "max_concurrent_scrapers": 5,
        "query_deadline_seconds": 90.0,
        "max_results": 150,
        "sort_by_quality": True,
    },
    "pairing": {
        "host": "0.0.0.0",
        "start_port": 8090,
        "max_attempts": 10,
        "proposal_ttl_seconds": 600.0,
    },
}
