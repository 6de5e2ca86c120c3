#!/usr/bin/env python3
"""Run the JWT signing key rotation scheduler outside the web process.

Usage:
    # Check every JWT_ROTATION_CHECK_INTERVAL_MS until SIGINT/SIGTERM:
    REDIS_URL=redis://localhost:6379/0 JWT_ENCRYPTION_KEY=... python scripts/rotate_jwt_keys.py

    # Single check (cron style), or rotate immediately:
    python scripts/rotate_jwt_keys.py --once
    python scripts/rotate_jwt_keys.py --once --force

Environment Variables:
    REDIS_URL: Coordination store shared with the API instances
    JWT_ENCRYPTION_KEY / JWT_SECRET: Secret the stored keys are encrypted with
    JWT_ROTATION_*: Rotation interval, grace period and key limits
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run(once: bool, force: bool) -> int:
    # Import here so argparse --help works without configuration
    from authguard.config import get_settings
    from authguard.logging import get_logger
    from authguard.service.jwt_keys import JWTKeyRegistry, RotationScheduler
    from authguard.storage.redis_cache import RedisCache

    logger = get_logger("authguard.scripts.rotate_jwt_keys")
    settings = get_settings()
    cache = RedisCache(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    await cache.connect()
    registry = JWTKeyRegistry(cache, settings.key_encryption_secret, settings.jwt_key_config())
    scheduler = RotationScheduler(registry)

    try:
        if once:
            result = await scheduler.run_once(force=force)
            if result is None:
                return 1
            print(f"rotated={result.rotated} reason={result.reason}")
            if result.key is not None:
                print(f"  new signing key: {result.key.id} (expires {result.key.expires_at.isoformat()})")
            return 0

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        if force:
            await scheduler.run_once(force=True)
        scheduler.start()
        await stop.wait()
        logger.info("jwt_rotation_scheduler_shutting_down")
        await scheduler.stop()
        return 0
    finally:
        await cache.close()


def main():
    parser = argparse.ArgumentParser(
        description="JWT signing key rotation scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single rotation check and exit",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Rotate now even if the active key is not yet due",
    )
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run(args.once, args.force)))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
