from __future__ import annotations

import argparse
import asyncio
import sys

from tokenvault.persistence.db import SessionLocal
from tokenvault.services.auth.api_keys import create_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a TokenVault API key")
    parser.add_argument("--user-id", required=True, help="Identity recorded on audit entries")
    parser.add_argument("--role", required=True, help="Role: reader|operator|admin")
    parser.add_argument("--name", required=True, help="Key label")
    parser.add_argument("--expires-in-days", type=int, default=None, help="Optional key lifetime")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    async with SessionLocal() as session:
        issued = await create_api_key(
            session,
            name=args.name,
            user_id=args.user_id,
            role=role,
            expires_in_days=args.expires_in_days,
        )
    print("API key created:")
    print(f"  key_id: {issued.api_key.id}")
    print(f"  key_prefix: {issued.api_key.key_prefix}")
    print(f"  role: {issued.api_key.role}")
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
