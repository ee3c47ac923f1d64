"""
Escrow Ledger - Main Application Entry Point

This module orchestrates the application by:
- Loading configuration
- Initializing the logger and storage (PostgreSQL or in-memory)
- Wiring the gateway, contract collaborator, commission engine and notifiers
- Running the FastAPI server with the auto-release scheduler
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import uvicorn
from telegram import Bot

from commission_engine import CommissionEngine, initialize_defaults
from config import Config, ConfigError, get_config
from contracts import InMemoryMarketplace, MarketplaceClient
from escrow_admin import EscrowAdmin
from escrow_api import create_app
from escrow_automation import AutoReleaseScheduler
from escrow_database import EscrowDatabase, PostgresCommissionSettingsStore, create_escrow_db
from escrow_memory_store import MemoryCommissionSettingsStore, MemoryEscrowStore
from escrow_service import SYSTEM_ACTOR, EscrowLedger, LedgerSettings
from notifications import (
    CompositeNotifier,
    DatabaseNotifier,
    LoggingNotifier,
    Notifier,
    TelegramNotifier,
)
from payment_gateway import StripeGateway
from utils import setup_logger

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Escrow ledger service")
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Keep all state in process memory instead of PostgreSQL",
    )
    parser.add_argument("--env-file", help="Path to a .env file")
    parser.add_argument(
        "--seed-commission",
        action="store_true",
        help="Create the default talent and manager commission settings if missing",
    )
    return parser.parse_args(argv)


def build_notifier(config: Config, database: Optional[EscrowDatabase]) -> Notifier:
    """Pick notification channels from the configuration."""
    notifiers: List[Notifier] = [DatabaseNotifier(database) if database else LoggingNotifier()]
    if config.has_telegram_config:
        notifiers.append(TelegramNotifier(Bot(config.telegram_bot_token), int(config.admin_chat_id)))
        logger.info("Telegram ops alerts enabled")
    return CompositeNotifier(notifiers)


async def async_main(args: argparse.Namespace, config: Config) -> None:
    """Wire the services and serve the API until shutdown."""
    database: Optional[EscrowDatabase] = None

    if args.memory:
        logger.warning("Running with in-memory storage; state is lost on exit")
        repository = MemoryEscrowStore()
        settings_store = MemoryCommissionSettingsStore()
    else:
        database = await create_escrow_db(
            config.database_url,
            min_size=config.db_pool_min_size,
            max_size=config.db_pool_max_size,
        )
        repository = database
        settings_store = PostgresCommissionSettingsStore(database)
        logger.info("✓ Database connected and schema ready")

    if config.has_marketplace_config:
        contracts = MarketplaceClient(
            config.marketplace_api_url, config.marketplace_api_token, timeout=config.gateway_timeout
        )
    else:
        logger.warning("MARKETPLACE_API_URL not set; using an empty in-memory contract registry")
        contracts = InMemoryMarketplace()

    if args.seed_commission:
        created = await initialize_defaults(settings_store, created_by=SYSTEM_ACTOR)
        logger.info(f"Seeded {len(created)} default commission setting(s)")

    gateway = StripeGateway(
        config.gateway_api_key, base_url=config.gateway_base_url, timeout=config.gateway_timeout
    )
    commission = CommissionEngine(
        settings_store, users=contracts, default_percentage=config.default_platform_fee_percentage
    )
    ledger = EscrowLedger(
        repository,
        gateway,
        contracts,
        commission,
        notifier=build_notifier(config, database),
        settings=LedgerSettings.from_config(config),
    )
    admin = EscrowAdmin(ledger, config.admin_user_ids, settings_store=settings_store)
    automation = AutoReleaseScheduler(
        ledger,
        reconcile_interval_minutes=config.reconcile_interval_minutes,
        stale_deposit_minutes=config.stale_deposit_minutes,
    )
    if not config.admin_user_ids:
        logger.warning("ADMIN_USER_IDS is empty; admin endpoints will reject every caller")

    app = create_app(ledger, admin, automation=automation, database=database)

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower(),
    ))
    logger.info(f"Starting {config.app_name} API on {config.api_host}:{config.api_port}")
    await server.serve()


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for the application.
    Sets up logging and runs the async main function.
    """
    args = parse_args(argv)

    try:
        config = get_config(env_file=args.env_file, require_database=not args.memory)
    except ConfigError as e:
        print(f"CRITICAL ERROR: Invalid configuration: {e}")
        sys.exit(1)

    setup_logger(
        '',
        log_level=config.log_level,
        log_file=config.log_file,
        log_format=config.log_format,
        max_bytes=config.log_max_size,
        backup_count=config.log_backup_count,
    )
    logger.info(f"Configuration loaded: {config!r}")

    try:
        asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.critical(f"Application failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
