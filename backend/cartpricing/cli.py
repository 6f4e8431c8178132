import argparse
import asyncio
import json
import uuid
from pathlib import Path
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from cartpricing import models  # noqa: F401
from cartpricing.core.errors import PricingError
from cartpricing.db.base import Base
from cartpricing.db.session import SessionLocal, engine
from cartpricing.services import reconciler
from cartpricing.services.receipts import render_cart_receipt_pdf


def _parse_cart_id(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID((raw or "").strip())
    except ValueError as exc:
        raise SystemExit(f"Invalid cart id: {raw!r}") from exc


def _resolve_pdf_path(raw_path: str) -> Path:
    path = Path((raw_path or "").strip() or "receipt.pdf")
    if path.suffix.lower() != ".pdf":
        raise SystemExit("Receipt output must be a .pdf file")
    if path.exists() and path.is_dir():
        raise SystemExit(f"Output path points to a directory: {path}")
    return path


async def create_schema(bind: AsyncEngine = engine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Schema created")


async def snapshot_cart(cart_id: uuid.UUID, *, session_factory: async_sessionmaker = SessionLocal) -> Dict[str, Any]:
    async with session_factory() as session:
        reconciled = await reconciler.snapshot(session, cart_id)
        return reconciler.serialize(reconciled).model_dump(mode="json")


async def sync_cart_prices(cart_id: uuid.UUID, *, session_factory: async_sessionmaker = SessionLocal) -> Dict[str, Any]:
    async with session_factory() as session:
        result = await reconciler.sync_prices(session, cart_id)
        return reconciler.describe_sync(result).model_dump(mode="json")


async def write_receipt(
    cart_id: uuid.UUID, output: Path, *, session_factory: async_sessionmaker = SessionLocal
) -> Path:
    async with session_factory() as session:
        reconciled = await reconciler.snapshot(session, cart_id)
    output.write_bytes(render_cart_receipt_pdf(reconciled))
    return output


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cart pricing utilities")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("create-schema", help="Create database tables for all models")

    snap = subparsers.add_parser("snapshot", help="Print the priced snapshot of a cart as JSON")
    snap.add_argument("--cart-id", required=True, help="Cart UUID")

    sync = subparsers.add_parser("sync-prices", help="Write tier-correct prices and repair adjustments")
    sync.add_argument("--cart-id", required=True, help="Cart UUID")

    receipt = subparsers.add_parser("receipt", help="Render a cart receipt PDF")
    receipt.add_argument("--cart-id", required=True, help="Cart UUID")
    receipt.add_argument("--output", default="receipt.pdf", help="Output PDF path")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "create-schema":
        asyncio.run(create_schema())
        return True

    if args.command == "snapshot":
        data = asyncio.run(snapshot_cart(_parse_cart_id(args.cart_id)))
        print(json.dumps(data, indent=2))
        return True

    if args.command == "sync-prices":
        data = asyncio.run(sync_cart_prices(_parse_cart_id(args.cart_id)))
        print(json.dumps(data, indent=2))
        return True

    if args.command == "receipt":
        output = asyncio.run(write_receipt(_parse_cart_id(args.cart_id), _resolve_pdf_path(args.output)))
        print(f"Receipt written to {output}")
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    try:
        handled = _run_cli_command(args)
    except PricingError as exc:
        raise SystemExit(exc.detail) from exc
    if not handled:
        parser.print_help()


if __name__ == "__main__":
    main()
