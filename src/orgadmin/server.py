#!/usr/bin/env python3
"""
HTTP server for the organization admin auth core.

Architecture:
    Admin console (JSON/cookies) <-> aiohttp app (/api/auth) <-> AuthManager <-> SQLite

Configuration comes from the environment (see orgadmin.config).
"""

import asyncio
import signal
import sys
from datetime import timedelta
from typing import Optional

from aiohttp import web
from loguru import logger

from .api.auth_api import setup_routes
from .api.middleware import MANAGER_KEY, SETTINGS_KEY, cors_middleware, error_middleware
from .auth.audit import AuditTrail
from .auth.database import AccountDatabase
from .auth.jwt_handler import JWTHandler
from .auth.models import Clock, utcnow
from .auth.permissions import seed_roles
from .auth.user_manager import AuthManager
from .config import Settings


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a stderr sink at `level`."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
               "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )


def build_manager(
    settings: Settings,
    clock: Clock = utcnow,
    audit_trail: Optional[AuditTrail] = None,
) -> AuthManager:
    """Wire the auth core from settings and seed the system roles."""
    db = AccountDatabase(settings.db_path)
    seed_roles(db)

    jwt = JWTHandler(
        access_secret=settings.access_token_secret,
        refresh_secret=settings.refresh_token_secret,
        algorithm=settings.jwt_algorithm,
        access_expiry=timedelta(minutes=settings.access_token_expiry_minutes),
        refresh_expiry=timedelta(days=settings.refresh_token_expiry_days),
    )

    return AuthManager(
        db,
        jwt,
        bcrypt_rounds=settings.bcrypt_rounds,
        max_allowed_devices=settings.max_allowed_devices,
        reset_ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
        clock=clock,
        audit_trail=audit_trail,
    )


async def health_check(request: web.Request) -> web.Response:
    return web.json_response({"status": "healthy", "service": "orgadmin-auth"})


def create_app(settings: Settings, manager: Optional[AuthManager] = None) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        settings: Runtime settings
        manager: Pre-built manager (tests inject one with a fake clock)

    Returns:
        Configured application
    """
    settings.check_deployment()

    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[SETTINGS_KEY] = settings
    app[MANAGER_KEY] = manager or build_manager(settings)

    app.router.add_get("/health", health_check)
    setup_routes(app)
    return app


async def serve(settings: Settings) -> None:
    """Run the server until SIGINT/SIGTERM."""
    app = create_app(settings)

    logger.info("Starting orgadmin auth server")
    logger.info(f"Environment: {settings.environment}, database: {settings.db_path}")

    loop = asyncio.get_running_loop()
    stop = loop.create_future()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        if not stop.done():
            loop.call_soon_threadsafe(stop.set_result, None)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.host, settings.port)
    await site.start()
    logger.info(f"Listening on {settings.host}:{settings.port}")

    await stop

    await runner.cleanup()
    logger.info("Server stopped")


def main() -> None:
    """Console entry point."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    main()
