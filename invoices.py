"""
PDF invoices.

One file per order, named `invoice-<order id>.pdf`, stored under
INVOICE_DIR and served by the API at /invoices/<filename>.
"""
import argparse
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from fpdf import FPDF

from checkout import maybe_oid
from errors import InvoiceNotFoundError, InvoiceTooLargeError

logger = logging.getLogger(__name__)

INVOICE_DIR = os.getenv("INVOICE_DIR", "invoices")
INVOICE_MAX_BYTES = int(os.getenv("INVOICE_MAX_BYTES", str(5 * 1024 * 1024)))

_FILENAME_RE = re.compile(r"^invoice-([0-9a-f]{24})\.pdf$")


def invoice_filename(order_id) -> str:
    return f"invoice-{order_id}.pdf"


def invoice_url(order_id) -> str:
    return f"/invoices/{invoice_filename(order_id)}"


def order_id_from_filename(filename: str) -> Optional[str]:
    m = _FILENAME_RE.match(filename)
    return m.group(1) if m else None


def invoice_path(filename: str) -> Path:
    """Resolve an existing invoice file; anything else is a 404."""
    if order_id_from_filename(filename) is None:
        raise InvoiceNotFoundError(filename)
    path = Path(INVOICE_DIR) / filename
    if not path.is_file():
        raise InvoiceNotFoundError(filename)
    return path


def _latin1(text: Any) -> str:
    # core PDF fonts only cover latin-1
    return str(text).encode("latin-1", "replace").decode("latin-1")


def render_invoice(order: Dict[str, Any], customer_name: str = "Customer",
                   max_bytes: Optional[int] = None) -> bytes:
    limit = INVOICE_MAX_BYTES if max_bytes is None else max_bytes
    pdf = FPDF()
    # uncompressed, every text line ends up verbatim in the output, so the
    # text written so far is a lower bound on the final size
    pdf.set_compression(False)
    written = 0
    pdf.set_title(_latin1(f"Invoice {order['_id']}"))
    pdf.add_page()

    pdf.set_font("Helvetica", "B", 24)
    pdf.cell(0, 14, "Invoice", align="C", new_x="LMARGIN", new_y="NEXT")
    pdf.ln(4)

    created = order.get("created_at")
    pdf.set_font("Helvetica", size=12)
    header = [
        f"Order ID: {order['_id']}",
        f"Date: {created.strftime('%Y-%m-%d') if created else '-'}",
        f"Customer: {customer_name}",
    ]
    address = order.get("shipping_address") or {}
    if address:
        header.append(f"Ship to: {address.get('street', '')}, {address.get('city', '')} "
                      f"{address.get('postal_code', '')}")
    for line in header:
        text = _latin1(line)
        written += len(text)
        pdf.cell(0, 8, text, new_x="LMARGIN", new_y="NEXT")
    pdf.ln(4)

    pdf.set_font("Helvetica", "U", 12)
    pdf.cell(0, 8, "Items:", new_x="LMARGIN", new_y="NEXT")
    pdf.set_font("Helvetica", size=12)
    for item in order.get("items", []):
        text = _latin1(f"- {item['quantity']} × ${item['price_at_purchase']:.2f}  {item.get('name', '')}")
        written += len(text)
        if written > limit:
            raise InvoiceTooLargeError(written, limit)
        pdf.cell(0, 8, text, new_x="LMARGIN", new_y="NEXT")

    pdf.ln(4)
    pdf.set_font("Helvetica", "B", 12)
    pdf.cell(0, 8, f"Total: ${order['total']:.2f}", align="R", new_x="LMARGIN", new_y="NEXT")

    data = bytes(pdf.output())
    if len(data) > limit:
        raise InvoiceTooLargeError(len(data), limit)
    return data


def write_invoice(order: Dict[str, Any], customer_name: str = "Customer") -> Path:
    data = render_invoice(order, customer_name)
    directory = Path(INVOICE_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / invoice_filename(order["_id"])
    path.write_bytes(data)
    logger.info("Invoice written: %s (%d bytes)", path, len(data))
    return path


def generate_missing_invoices(db, force: bool = False) -> Tuple[int, int]:
    """Write invoices for every order that lacks one. Returns (written, skipped)."""
    written = skipped = 0
    for order in db["order"].find():
        path = Path(INVOICE_DIR) / invoice_filename(order["_id"])
        if path.exists() and not force:
            skipped += 1
            continue
        uid = maybe_oid(order.get("user_id"))
        user = db["user"].find_one({"_id": uid}) if uid is not None else None
        try:
            write_invoice(order, (user or {}).get("name", "Customer"))
            written += 1
        except InvoiceTooLargeError as exc:
            logger.error("Skipping invoice for order %s: %s", order["_id"], exc)
    return written, skipped


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Generate missing order invoices")
    parser.add_argument("--force", action="store_true", help="overwrite existing invoice files")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    from database import db

    if db is None:
        print("Database not configured (set DATABASE_URL)", file=sys.stderr)
        return 1
    written, skipped = generate_missing_invoices(db, force=args.force)
    print(f"Generated {written} invoice(s), skipped {skipped}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
