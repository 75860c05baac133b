from __future__ import annotations

import argparse
import asyncio
import sys

from authplane.core.config import get_settings
from authplane.core.logging import configure_logging
from authplane.persistence.db import build_engine, build_session_factory
from authplane.services.api_keys import ApiKeyService


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--created-by", default="create_api_key", help="Actor recorded on the key")
    parser.add_argument("--scope", action="append", default=[], help="Scope to grant; repeatable")
    parser.add_argument("--quota-limit", type=int, default=None, help="Per-key quota; omit for none")
    parser.add_argument(
        "--quota-period",
        default="month",
        choices=("hour", "day", "month"),
        help="Window the per-key quota applies to",
    )
    parser.add_argument("--expires-in", type=int, default=None, help="Lifetime in seconds")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = build_engine(settings)
    service = ApiKeyService(
        build_session_factory(engine),
        key_prefix=settings.api_key_prefix,
        secret_length=settings.api_key_secret_length,
    )
    try:
        created = await service.create_api_key(
            tenant_id=args.tenant,
            created_by=args.created_by,
            name=args.name,
            scopes=args.scope,
            quota_limit=args.quota_limit,
            quota_period=args.quota_period,
            expires_in_seconds=args.expires_in,
        )
    finally:
        await engine.dispose()

    # The plaintext is never stored; this is the only time it is shown.
    print("API key created:")
    print(f"  key_id: {created.api_key.id}")
    print(f"  key_prefix: {created.api_key.key_prefix}")
    print("  api_key: ")
    print(f"    {created.plaintext}")
    return 0


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
