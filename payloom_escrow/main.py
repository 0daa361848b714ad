"""
PayLoom Escrow - Main Application Entry Point

This module orchestrates the escrow service by:
- Loading configuration
- Initializing the logger and the database pool
- Starting the notification dispatcher and the auto-release scheduler
- Serving the FastAPI application with uvicorn
- Shutting everything down in reverse order
"""

import asyncio
import logging
import sys
from typing import Optional

import uvicorn
from telegram import Bot

from payloom_escrow.api_server import create_app
from payloom_escrow.config import Config, ConfigError, get_config
from payloom_escrow.database import EscrowDatabase, create_escrow_db
from payloom_escrow.escrow_automation import EscrowAutomation
from payloom_escrow.escrow_service import EscrowService
from payloom_escrow.fees import FeeCalculator
from payloom_escrow.ledger import LedgerWriter
from payloom_escrow.mpesa_service import MpesaClient
from payloom_escrow.notifications import NotificationDispatcher, SmsClient
from payloom_escrow.utils import setup_logger
from payloom_escrow.verification import PaymentVerificationGateway

logger = logging.getLogger(__name__)


def display_startup_banner(config: Config) -> None:
    """Log the effective configuration (secrets omitted)."""
    settings = config.escrow
    logger.info("=" * 60)
    logger.info(f"{config.app_name} starting ({config.app_env})")
    logger.info(f"M-Pesa mode:       {config.mpesa_environment.upper()}")
    logger.info(f"STK Push:          {'configured' if config.has_stk_config else 'disabled'}")
    logger.info(f"B2C payouts:       {'configured' if config.has_b2c_config else 'disabled'}")
    logger.info(f"Platform fee:      {settings.fee_percent}% (min {settings.currency} {settings.fee_minimum})")
    logger.info(f"Order range:       {settings.min_order_amount} - {settings.max_order_amount}")
    logger.info(f"Auto-release:      {settings.auto_release_days} days, sweep every "
                f"{config.auto_release_interval_hours}h")
    logger.info(f"SMS:               {'live' if config.bulk_sms_api_key else 'dry run'}")
    logger.info(f"Admin alerts:      {'telegram' if config.has_telegram_config else 'log only'}")
    logger.info(f"API:               {config.api_host}:{config.api_port}")
    logger.info("=" * 60)


async def async_main(config: Config) -> None:
    """Build the services, serve the API, then clean up."""
    database: Optional[EscrowDatabase] = None
    dispatcher: Optional[NotificationDispatcher] = None
    automation: Optional[EscrowAutomation] = None
    bot: Optional[Bot] = None

    try:
        logger.info("Initializing database connection...")
        database = await create_escrow_db(config.database_url, config.db_pool_min, config.db_pool_max)
        logger.info("✓ Database initialized successfully")

        if config.has_telegram_config:
            bot = Bot(token=config.telegram_bot_token)
            await bot.initialize()
            logger.info("✓ Telegram admin alerts enabled")

        sms_client = SmsClient(
            config.bulk_sms_api_url, config.bulk_sms_api_key, config.bulk_sms_sender_id
        )
        dispatcher = NotificationDispatcher(
            database,
            sms_client=sms_client,
            bot=bot,
            admin_chat_id=config.admin_chat_id,
            queue_size=config.notification_queue_size,
        )
        await dispatcher.start()

        mpesa_client = MpesaClient(config) if (config.has_stk_config or config.has_b2c_config) else None
        if mpesa_client is None:
            logger.warning("M-Pesa credentials missing, STK Push and payouts are disabled")

        escrow = EscrowService(
            database,
            FeeCalculator(config.escrow),
            config.escrow,
            ledger=LedgerWriter(),
            dispatcher=dispatcher,
            mpesa_client=mpesa_client,
        )
        gateway = PaymentVerificationGateway(database, escrow, config.escrow, mpesa_client)

        automation = EscrowAutomation(escrow, config.auto_release_interval_hours)
        await automation.start()

        app = create_app(escrow, gateway, automation, config)
        server = uvicorn.Server(uvicorn.Config(
            app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
        ))
        logger.info("✓ Services started, serving API")
        await server.serve()

    finally:
        logger.info("Performing cleanup...")

        if automation is not None:
            await automation.stop()
        if dispatcher is not None:
            await dispatcher.stop()
        if bot is not None:
            await bot.shutdown()
        if database is not None:
            await database.disconnect()

        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Loads configuration, sets up logging and runs the async main function.
    """
    try:
        config = get_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logger(
        'payloom_escrow',
        config.log_level,
        config.log_file,
        config.log_format,
        config.log_max_size,
        config.log_backup_count,
    )
    display_startup_banner(config)

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.critical(f"Application failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
