"""
graphinbox - process setup.

Configures logging and builds a NotificationService from environment
variables. Host applications embed the service; running this module
validates the configuration and initializes nothing else.

Usage:
    python -m graphinbox.main

Configuration is entirely via environment variables.
See config.py for all available settings.
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter

from .config import ServiceConfig
from .policies import GovernancePolicy, RecipientExpansionPolicy, StaticGovernancePolicy
from .service import NotificationService

logger = logging.getLogger(__name__)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


def build_service(
    config: ServiceConfig | None = None,
    governance: GovernancePolicy | None = None,
    expansion: RecipientExpansionPolicy | None = None,
) -> NotificationService:
    """Build a NotificationService.

    Args:
        config: Service configuration (loaded from env if not provided)
        governance: Governance policy (everything targetable, no approvals
            if not provided)
        expansion: Recipient expansion policy (identity if not provided)
    """
    config = config or ServiceConfig.from_env()
    service = NotificationService.from_config(
        config,
        governance or StaticGovernancePolicy(),
        expansion,
    )
    logger.info("NotificationService ready", extra={"data_dir": config.storage.data_dir})
    return service


def main() -> None:
    """Main entry point."""
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()
    build_service(config)


if __name__ == "__main__":
    main()
