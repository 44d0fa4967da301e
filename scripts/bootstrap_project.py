#!/usr/bin/env python3
"""Bootstrap a project and print its API key.

Usage:
    # Using environment variables:
    PROJECT_NAME="Acme" python scripts/bootstrap_project.py

    # Or with command line args, also registering a first user:
    python scripts/bootstrap_project.py --name Acme --email owner@example.com --password Secret123!

The plaintext key is shown once. Store the printed digest and prefix in the
project configuration; the engine only ever looks projects up by digest.

Environment Variables:
    PROJECT_NAME: Name of the project to create
    JWT_SECRET: Signing secret (a throwaway one is generated if unset)
    API_KEY_PEPPER: HMAC key for API key digests (defaults to JWT_SECRET)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_project(
    name: str,
    *,
    email: str | None = None,
    password: str | None = None,
    require_verification: bool = True,
    dry_run: bool = False,
) -> dict:
    """Create a project, optionally with a first user.

    Returns:
        dict with project_id, api_key, api_key_hash, api_key_prefix and status
    """
    # Import here to avoid loading config before env vars are set
    from projectauth.config import Settings
    from projectauth.service.runtime import build_runtime
    from projectauth.storage.models import ProjectSettings

    if dry_run:
        print(f"[DRY RUN] Would create project: {name}")
        return {"project_id": None, "status": "dry_run"}

    runtime = build_runtime(Settings.from_env())
    try:
        project, api_key = runtime.projects.create_project(
            name, settings=ProjectSettings(require_email_verification=require_verification)
        )
        result = {
            "project_id": project.id,
            "api_key": api_key,
            "api_key_hash": project.api_key_hash,
            "api_key_prefix": project.api_key_prefix,
            "status": "created",
        }
        if email and password:
            ctx = await runtime.accounts.context_for(api_key)
            registered = await runtime.accounts.register(ctx, email, password)
            result["user_id"] = registered.user.id
            result["access_token"] = registered.tokens.access_token
    finally:
        await runtime.close()
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a projectauth project",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("PROJECT_NAME"),
        help="Project name (or set PROJECT_NAME env var)",
    )
    parser.add_argument("--email", help="Register a first user with this email")
    parser.add_argument("--password", help="Password for the first user")
    parser.add_argument(
        "--no-verification",
        action="store_true",
        help="Let users sign in without verifying their email",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.name:
        print("Error: --name or PROJECT_NAME environment variable required")
        sys.exit(1)

    if bool(args.email) != bool(args.password):
        print("Error: --email and --password must be given together")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
        print("Note: JWT_SECRET not set; generated a throwaway secret")

    try:
        result = asyncio.run(
            bootstrap_project(
                args.name,
                email=args.email,
                password=args.password,
                require_verification=not args.no_verification,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nProject created successfully!")
        print(f"  Project ID: {result['project_id']}")
        print(f"  API Key: {result['api_key']}")
        print(f"  API Key Digest: {result['api_key_hash']}")
        print(f"  API Key Prefix: {result['api_key_prefix']}")
        if result.get("user_id"):
            print(f"  First User ID: {result['user_id']}")
            print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
