import asyncio

import pytest

from cartpricing import cli


def test_parser_knows_pricing_commands():
    parser = cli._build_parser()
    args = parser.parse_args(["snapshot", "--cart-id", "0d5f7c1e-9a53-4c0e-8c1e-2b1d2f0b6d11"])
    assert args.command == "snapshot"
    args = parser.parse_args(["receipt", "--cart-id", "x", "--output", "out.pdf"])
    assert args.output == "out.pdf"


def test_invalid_cart_id_exits():
    with pytest.raises(SystemExit):
        cli._parse_cart_id("not-a-uuid")


def test_receipt_output_must_be_pdf(tmp_path):
    with pytest.raises(SystemExit):
        cli._resolve_pdf_path(str(tmp_path / "receipt.txt"))
    assert cli._resolve_pdf_path(str(tmp_path / "receipt.pdf")).name == "receipt.pdf"


def test_snapshot_sync_and_receipt_commands(session_factory, seed, tmp_path):
    async def prepare():
        async with session_factory() as session:
            helper = seed(session)
            variant = await helper.variant(tiers=((1000, None, None), (700, 5, None)))
            cart = await helper.cart()
            await helper.line(cart, variant, quantity=6, unit_price=1000)
            return cart.id

    cart_id = asyncio.run(prepare())

    data = asyncio.run(cli.snapshot_cart(cart_id, session_factory=session_factory))
    assert data["needs_price_sync"] is True
    assert data["items"][0]["pricing"]["correct_price"] == 700

    synced = asyncio.run(cli.sync_cart_prices(cart_id, session_factory=session_factory))
    assert synced["changes"][0]["type"] == "price_updated"
    assert synced["cart"]["totals"]["subtotal"] == 4200

    output = asyncio.run(cli.write_receipt(cart_id, tmp_path / "cart.pdf", session_factory=session_factory))
    assert output.read_bytes().startswith(b"%PDF")
