from __future__ import annotations

import io
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence
from xml.sax.saxutils import escape as xml_escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from cartpricing.core.config import settings
from cartpricing.services.pricing import format_minor
from cartpricing.services.reconciler import LinePricing, ReconciledCart

_FONTS: tuple[str, str] | None = None


def _first_existing_path(candidates: Sequence[str]) -> str | None:
    return next((path for path in candidates if Path(path).exists()), None)


def _register_fonts() -> tuple[str, str]:
    global _FONTS
    if _FONTS is not None:
        return _FONTS

    regular_path = _first_existing_path(["/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf"])
    bold_path = _first_existing_path(["/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"]) or regular_path
    if regular_path and bold_path:
        registered = set(pdfmetrics.getRegisteredFontNames())
        for name, path in (("CartSans", regular_path), ("CartSansBold", bold_path)):
            if name not in registered:
                pdfmetrics.registerFont(TTFont(name, path))
        _FONTS = ("CartSans", "CartSansBold")
    else:
        _FONTS = ("Helvetica", "Helvetica-Bold")
    return _FONTS


def _styles(font_regular: str, font_bold: str) -> tuple[ParagraphStyle, ParagraphStyle, ParagraphStyle, ParagraphStyle]:
    styles = getSampleStyleSheet()
    base = ParagraphStyle(
        "base", parent=styles["Normal"], fontName=font_regular, fontSize=10, leading=13, textColor=colors.HexColor("#0f172a")
    )
    muted = ParagraphStyle("muted", parent=base, fontSize=8.5, leading=11, textColor=colors.HexColor("#475569"))
    h1 = ParagraphStyle("h1", parent=base, fontName=font_bold, fontSize=16, leading=20)
    header = ParagraphStyle("tableHeader", parent=muted, fontName=font_bold)
    return base, muted, h1, header


def _money(amount: int, currency: str) -> str:
    return xml_escape(format_minor(amount, currency))


def _item_cell(line: LinePricing, currency: str, *, base: ParagraphStyle, muted: ParagraphStyle) -> list[object]:
    parts: list[object] = [Paragraph(xml_escape(line.item.title), base)]
    for adjustment in line.adjustments:
        note = f"{xml_escape(adjustment.description or adjustment.code)}: {_money(adjustment.amount, currency)}"
        if line.discount_suspended and line.item.is_reward:
            note = f"{note} (suspended)"
        parts.append(Paragraph(note, muted))
    return parts


def _item_rows(
    reconciled: ReconciledCart, *, base: ParagraphStyle, muted: ParagraphStyle, header: ParagraphStyle
) -> list[list[object]]:
    currency = reconciled.cart.currency
    rows: list[list[object]] = [
        [Paragraph("Item", header), Paragraph("Qty", header), Paragraph("Unit", header), Paragraph("Total", header)]
    ]
    for line in reconciled.lines:
        quantity = int(line.item.quantity)
        rows.append(
            [
                _item_cell(line, currency, base=base, muted=muted),
                Paragraph(str(quantity), base),
                Paragraph(_money(line.correct_price, currency), base),
                Paragraph(_money(line.correct_price * quantity, currency), base),
            ]
        )
    return rows


def _totals_rows(reconciled: ReconciledCart, *, base: ParagraphStyle, muted: ParagraphStyle) -> list[list[object]]:
    totals = reconciled.totals
    currency = reconciled.cart.currency
    entries = [
        ("Subtotal", totals.subtotal),
        ("PWP discount", -totals.pwp_discount),
        ("Discounts", -totals.adjustment_discount),
        ("Points redeemed", -totals.points_discount),
        ("Shipping", totals.shipping),
        ("Tax", totals.tax),
    ]
    rows: list[list[object]] = [
        [Paragraph(label, muted), Paragraph(_money(amount, currency), base)]
        for label, amount in entries
        if amount or label in {"Subtotal", "Shipping", "Tax"}
    ]
    rows.append([Paragraph("<b>Total</b>", base), Paragraph(f"<b>{_money(totals.total, currency)}</b>", base)])
    return rows


def render_cart_receipt_pdf(reconciled: ReconciledCart, *, generated_at: datetime | None = None) -> bytes:
    """Render a one-page price breakdown for a reconciled cart."""
    generated_at = generated_at or datetime.now(timezone.utc)
    font_regular, font_bold = _register_fonts()
    base, muted, h1, header = _styles(font_regular, font_bold)

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=16 * mm,
        bottomMargin=16 * mm,
        title=f"Cart {reconciled.cart.id}",
    )

    story: list[object] = [
        Paragraph(xml_escape(settings.app_name), h1),
        Paragraph(f"Cart {reconciled.cart.id} &middot; {generated_at:%Y-%m-%d %H:%M} UTC", muted),
        Spacer(1, 10),
    ]

    items = Table(
        _item_rows(reconciled, base=base, muted=muted, header=header),
        colWidths=[doc.width * 0.55, doc.width * 0.10, doc.width * 0.17, doc.width * 0.18],
    )
    items.setStyle(
        TableStyle(
            [
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("LINEBELOW", (0, 0), (-1, 0), 0.8, colors.HexColor("#e2e8f0")),
                ("LINEABOVE", (0, 1), (-1, -1), 0.4, colors.HexColor("#e2e8f0")),
                ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
            ]
        )
    )
    story.append(items)
    story.append(Spacer(1, 12))

    totals = Table(_totals_rows(reconciled, base=base, muted=muted), colWidths=[doc.width * 0.75, doc.width * 0.25])
    totals.setStyle(TableStyle([("ALIGN", (1, 0), (1, -1), "RIGHT"), ("TOPPADDING", (0, 0), (-1, -1), 2)]))
    story.append(totals)

    doc.build(story)
    return buf.getvalue()
