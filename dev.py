#!/usr/bin/env python3

"""
Development utility for the bbauth server
"""

import argparse
import asyncio
import os
import secrets
import subprocess
import sys
from pathlib import Path

REQUIRED_PRODUCTION_VARS = ["ISSUER_URL", "VERIFIER_URL", "ADMIN_TOKEN", "JWT_PRIVATE_KEY", "JWT_PUBLIC_KEY"]


def run_command(command, check=True):
    """Run a command and exit with its status on failure"""
    print(f"$ {' '.join(command)}")
    result = subprocess.run(command)
    if check and result.returncode != 0:
        sys.exit(result.returncode)
    return result.returncode


def run_server():
    """Run development server with auto-reload"""
    env = os.environ.copy()
    env.setdefault("ENVIRONMENT", "development")
    env.setdefault("ISSUER_URL", "http://localhost:8000")
    print("🚀 Starting development server on http://localhost:8000")
    subprocess.run(
        [sys.executable, "-m", "uvicorn", "main:create_app", "--factory", "--reload", "--port", "8000"],
        env=env,
    )


def run_tests(live_url=None):
    """Run the pytest suite, or the smoke test against a running server"""
    if live_url:
        run_command([sys.executable, "test_server.py", "--url", live_url])
    else:
        run_command([sys.executable, "-m", "pytest", "-q"])


def generate_keys():
    """Generate an ES256 key pair for JWT signing"""
    from crypto import generate_es256_key_pair, private_key_to_pem, public_key_to_pem

    private_key, public_key = generate_es256_key_pair()
    private_pem = private_key_to_pem(private_key).strip().replace("\n", "\\n")
    public_pem = public_key_to_pem(public_key).strip().replace("\n", "\\n")

    print("🔑 Add these to your .env file:")
    print(f'JWT_PRIVATE_KEY="{private_pem}"')
    print(f'JWT_PUBLIC_KEY="{public_pem}"')


def generate_secret_key():
    """Generate a secure admin token"""
    print("🔐 Generated admin token:")
    print(f"ADMIN_TOKEN={secrets.token_urlsafe(48)}")


def check_env():
    """Check environment configuration"""
    print("🔍 Checking environment configuration...")

    environment = os.getenv("ENVIRONMENT", "production")
    missing = [var for var in REQUIRED_PRODUCTION_VARS if not os.getenv(var)]

    if missing and environment == "production":
        print(f"❌ Missing required variables for production: {', '.join(missing)}")
    elif missing:
        print(f"⚠️  Not set (fine for {environment}): {', '.join(missing)}")

    try:
        from config import Config
        config = Config()
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        return False

    print("✅ Environment configuration looks good!")
    print("\n📋 Current configuration:")
    print(f"   Environment: {config.environment}")
    print(f"   Host: {config.host}")
    print(f"   Port: {config.port}")
    print(f"   Issuer URL: {config.issuer_url}")
    print(f"   Verifier URL: {config.verifier_url or '(not set)'}")
    print(f"   Store: {'redis' if config.redis_url else 'memory'}")
    print(f"   Rate limiting: {config.rate_limit_enabled}")
    return True


def status(url):
    """Show server status"""
    print("📊 Server Status:")

    import httpx

    async def check_health():
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{url}/health", timeout=5)
            return response.json()

    try:
        health = asyncio.run(check_health())
    except httpx.HTTPError as e:
        print(f"❌ Server at {url} is not reachable: {e}")
        return

    print(f"✅ Server at {url} is running")
    print(f"   Status: {health.get('status')}")
    print(f"   Version: {health.get('version')}")
    print(f"   Environment: {health.get('environment')}")
    print(f"   Components: {health.get('components')}")


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Development utility for the bbauth server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Available commands:
  run         Run development server
  test        Run tests (add --url for a live smoke test)
  keys        Generate an ES256 signing key pair
  secret      Generate a secure admin token
  check       Check environment configuration
  status      Show server status

Examples:
  python dev.py run
  python dev.py test
  python dev.py test --url http://localhost:8000
  python dev.py keys >> .env
        """
    )

    parser.add_argument(
        "command",
        choices=["run", "test", "keys", "secret", "check", "status"],
        help="Command to execute"
    )
    parser.add_argument("--url", default=None, help="Base URL of a running server")

    args = parser.parse_args()

    # Change to script directory
    os.chdir(Path(__file__).parent)

    if args.command == "run":
        run_server()

    elif args.command == "test":
        run_tests(args.url)

    elif args.command == "keys":
        generate_keys()

    elif args.command == "secret":
        generate_secret_key()

    elif args.command == "check":
        sys.exit(0 if check_env() else 1)

    elif args.command == "status":
        status(args.url or "http://localhost:8000")

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
