#!/usr/bin/env python3
"""
Setup Verification Script

Runs the startup configuration validator and probes every external
dependency before the gateway is started.

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()


def print_header(title: str) -> None:
    """Print section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    """Print check result."""
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def check_env_file() -> bool:
    """Check if .env file exists."""
    env_path = project_root / ".env"
    exists = env_path.exists()
    print_result(".env file", exists, "Found" if exists else "File not found, using process environment")
    return exists


def check_dependencies() -> bool:
    """Check if required Python packages are installed."""
    required_packages = [
        "fastapi",
        "uvicorn",
        "pydantic",
        "pydantic_settings",
        "sqlalchemy",
        "asyncpg",
        "redis",
        "httpx",
    ]

    missing = []
    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing.append(package)

    if missing:
        print_result("Python packages", False, f"Missing: {', '.join(missing)}")
        return False
    print_result("Python packages", True, "All required packages installed")
    return True


def check_configuration() -> bool:
    """Run the same validator the application runs at startup."""
    from app.config import settings, validate_configuration

    result = validate_configuration(settings)
    for error in result.errors:
        print_result("Configuration", False, error)
    for warning in result.warnings:
        print(f"  \033[93m[WARN]\033[0m {warning}")
    if result.valid:
        print_result("Configuration", True, f"Valid for {settings.app_env}")
    return result.valid


async def check_postgres() -> bool:
    """Verify PostgreSQL connection."""
    from app.infra.database import check_db_health

    healthy = await check_db_health()
    print_result("PostgreSQL", healthy, "Connection successful" if healthy else "Connection failed")
    return healthy


async def check_redis() -> bool:
    """Verify Redis connection."""
    from app.infra.redis import check_redis_health

    healthy = await check_redis_health()
    print_result(
        "Redis",
        healthy,
        "Connection successful" if healthy else "Connection failed (in-process rate limiting)",
    )
    return healthy


async def check_square() -> bool:
    """Verify the default tenant's Square credentials with a one-item catalog search."""
    from app.config import settings
    from app.core.square import SquareApiError, SquareClient

    if not settings.square_access_token:
        print_result("Square API", False, "Skipped - SQUARE_ACCESS_TOKEN not set")
        return False

    client = SquareClient(settings.square_access_token, settings.square_environment, timeout=10.0)
    try:
        await client.search_catalog_objects({"objectTypes": ["ITEM"], "limit": 1})
        print_result("Square API", True, f"Credentials valid ({settings.square_environment})")
        return True
    except SquareApiError as e:
        print_result("Square API", False, f"{e.status_code or e.transport_code}: {str(e)[:50]}")
        return False
    finally:
        await client.close()


async def main():
    """Run all verification checks."""
    print("\n" + "="*60)
    print(" Square Booking Gateway - Setup Verification")
    print("="*60)

    critical_failed = False

    print_header("Environment File")
    check_env_file()

    print_header("Python Dependencies")
    if not check_dependencies():
        print("\n  Install with: pip install -e '.[test]'\n")
        return 1

    print_header("Configuration")
    if not check_configuration():
        critical_failed = True

    print_header("Service Connections")
    if not await check_postgres():
        critical_failed = True
    await check_redis()  # Non-critical
    await check_square()  # Non-critical: tenants may supply their own tokens

    print_header("Summary")

    if critical_failed:
        print("\n  \033[91mCRITICAL: Some required checks failed.\033[0m")
        print("  Please fix the issues above before running the application.\n")
        return 1

    print("\n  \033[92mAll required checks passed!\033[0m")
    print("  You can start the application with:")
    print("    uvicorn app.main:app --reload")
    print()
    return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
