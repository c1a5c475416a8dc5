"""
Environment Configuration Utility

ENVIRONMENT values:
- production: scheduler runs, db_init requires SETTLEMENT_INIT_CONFIRM=YES
- development: scheduler runs
- test: background scheduler is not started
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def is_test() -> bool:
    """Check if running in test environment."""
    return ENVIRONMENT == "test"


def background_jobs_enabled() -> bool:
    """Background jobs run everywhere except automated tests."""
    return not is_test()
