"""
Run the Stripe key security audit against the configured key store.

Reports valid/invalid/missing key slots per environment and warns about live
keys configured for development. Only fingerprints are printed.

Usage:
    python scripts/run_key_audit.py
    python scripts/run_key_audit.py --store secret production sk_live_...   # store a key first
"""
import argparse
import asyncio
import logging

from billing_sentinel.config import get_settings
from billing_sentinel.database import get_session_factory, dispose_engine
from billing_sentinel.services.container import build_services

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


async def run(args) -> int:
    settings = get_settings()
    services = build_services(settings, get_session_factory())

    try:
        if args.store:
            purpose, environment, key = args.store
            fp = await services.keys.store_key(purpose, environment, key)
            logger.info("Stored %s key for %s (fingerprint %s)", purpose, environment, fp)

        report = await services.keys.perform_security_audit()
        logger.info("Key audit (running environment: %s)", report.environment)
        for slot in report.valid_keys:
            logger.info("  [OK]      %s", slot)
        for slot in report.invalid_keys:
            logger.info("  [INVALID] %s", slot)
        for slot in report.missing_keys:
            logger.info("  [MISSING] %s", slot)
        for warning in report.warnings:
            logger.info("  [WARNING] %s", warning)
        logger.info("Secure: %s", report.is_secure)
        return 0 if report.is_secure else 1
    finally:
        await services.audit.drain(timeout=10.0)
        await services.incidents.drain(timeout=10.0)
        await dispose_engine()


def main():
    parser = argparse.ArgumentParser(description="Audit stored Stripe keys")
    parser.add_argument("--store", nargs=3, metavar=("PURPOSE", "ENVIRONMENT", "KEY"))
    raise SystemExit(asyncio.run(run(parser.parse_args())))


if __name__ == "__main__":
    main()
