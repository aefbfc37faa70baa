#!/usr/bin/env python3
"""
Operator CLI for the PDF Conversion API.

Run: pdf-api <command> (or python -m pdf_api.cli <command>)

Commands:
    create-key    Issue an API key for a tenant (prints the raw key once)
    list-keys     List keys for a company or user
    revoke-key    Revoke a key by document id
    serve         Run the API with uvicorn
"""

import argparse
import sys
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

from . import api_keys as keys  # noqa: E402
from .errors import ApiError, ErrorCode  # noqa: E402
from .persistence import ApiKeyRepository, utcnow  # noqa: E402


def create_key(
    repository: ApiKeyRepository,
    name: str,
    user_id: str,
    company_id: str,
    prefix: str = "pk_live_",
    permissions: Optional[List[str]] = None,
    expires_in_days: Optional[int] = None,
) -> str:
    """Insert a new key and return the raw key string."""
    if repository.name_exists(name, user_id):
        raise ApiError(ErrorCode.CONFLICT, f"An API key named '{name}' already exists")

    material = keys.generate_key_material()
    doc = keys.build_api_key_document(
        name=name,
        user_id=user_id,
        company_id=company_id,
        material=material,
        key_prefix=prefix,
        permissions=permissions,
        expires_in_days=expires_in_days,
        created_by="cli",
    )
    repository.insert(doc)
    return keys.format_api_key(prefix, material.key_id, material.raw_secret)


def list_keys(repository: ApiKeyRepository, company_id: Optional[str], user_id: Optional[str]) -> List[str]:
    docs, total = repository.list(company_id=company_id, user_id=user_id, page=1, limit=100)
    lines = [f"{total} key(s)"]
    for doc in docs:
        usage = doc.get("usage") or {}
        lines.append(
            f"  {doc['_id']}  {keys.display_key(doc):<32} {doc.get('name', ''):<24} "
            f"status={doc.get('status')} requests={usage.get('totalRequests', 0)}"
        )
    return lines


def revoke_key(repository: ApiKeyRepository, api_key_id: str) -> bool:
    updated = repository.update_fields(api_key_id, {
        "status": "revoked",
        "isActive": False,
        "isDeleted": True,
        "deletedAt": utcnow(),
    })
    return updated is not None


def serve(host: str, port: int, reload: bool) -> None:
    import uvicorn

    uvicorn.run("pdf_api.app:app", host=host, port=port, reload=reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pdf-api", description="PDF Conversion API operator tools")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-key", help="Issue an API key")
    create.add_argument("--name", required=True, help="Human-readable key name")
    create.add_argument("--user-id", required=True, help="Owning user id")
    create.add_argument("--company-id", required=True, help="Owning company id")
    create.add_argument("--prefix", default="pk_live_", choices=keys.KEY_PREFIXES)
    create.add_argument("--permission", action="append", dest="permissions", choices=keys.PERMISSIONS,
                        help="Repeatable; defaults to pdf_conversion + html_to_pdf")
    create.add_argument("--expires-in-days", type=int, default=None)

    listing = sub.add_parser("list-keys", help="List API keys")
    listing.add_argument("--company-id", default=None)
    listing.add_argument("--user-id", default=None)

    revoke = sub.add_parser("revoke-key", help="Revoke an API key")
    revoke.add_argument("api_key_id", help="Key document id")

    run = sub.add_parser("serve", help="Run the API server")
    run.add_argument("--host", default="0.0.0.0")
    run.add_argument("--port", type=int, default=8000)
    run.add_argument("--reload", action="store_true")

    return parser


def main(argv: Optional[List[str]] = None, repository: Optional[ApiKeyRepository] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        serve(args.host, args.port, args.reload)
        return 0

    repository = repository or ApiKeyRepository()
    try:
        if args.command == "create-key":
            raw_key = create_key(
                repository,
                name=args.name,
                user_id=args.user_id,
                company_id=args.company_id,
                prefix=args.prefix,
                permissions=args.permissions,
                expires_in_days=args.expires_in_days,
            )
            print(f"\n{'='*60}")
            print("API key created. Store it securely, it will not be shown again:")
            print(f"\n  {raw_key}\n")
            print(f"{'='*60}")
        elif args.command == "list-keys":
            for line in list_keys(repository, args.company_id, args.user_id):
                print(line)
        elif args.command == "revoke-key":
            if not revoke_key(repository, args.api_key_id):
                print(f"API key {args.api_key_id} not found", file=sys.stderr)
                return 1
            print(f"API key {args.api_key_id} revoked")
    except ApiError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
