"""Invoice export rendering (CSV, XLSX, PDF)."""

from __future__ import annotations

import csv
import io
import zipfile

from sqlalchemy.orm import Session

from app.errors import ValidationFailed
from app.models.billing import Invoice
from app.services.billing._common import _as_utc
from app.services.common import coerce_uuid

EXPORT_FIELDS = [
    "invoice_number",
    "status",
    "issued_date",
    "due_date",
    "paid_date",
    "subtotal",
    "tax_amount",
    "discount_amount",
    "total_amount",
    "currency",
    "payment_provider",
    "customer_name",
]

_FORMAT_ALIASES = {"excel": "xlsx"}

PDF_MAX_ROWS = 50


def _serialize_value(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return str(value.value)
    if hasattr(value, "isoformat"):
        return _as_utc(value).strftime("%Y-%m-%d")
    return str(value)


def _invoice_rows(invoices: list[Invoice]) -> list[list[str]]:
    return [[_serialize_value(getattr(invoice, field)) for field in EXPORT_FIELDS] for invoice in invoices]


def _render_csv(rows: list[list[str]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_FIELDS)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def _xlsx_col_name(index: int) -> str:
    out = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        out = chr(ord("A") + rem) + out
    return out


def _xml_escape(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _render_xlsx(rows: list[list[str]]) -> bytes:
    row_xml: list[str] = []
    for row_idx, row in enumerate([EXPORT_FIELDS, *rows], start=1):
        cells = [
            f'<c r="{_xlsx_col_name(col_idx)}{row_idx}" t="inlineStr"><is><t>{_xml_escape(value)}</t></is></c>'
            for col_idx, value in enumerate(row)
        ]
        row_xml.append(f'<row r="{row_idx}">{"".join(cells)}</row>')

    worksheet = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<worksheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main">'
        f"<sheetData>{''.join(row_xml)}</sheetData>"
        "</worksheet>"
    )
    workbook = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<workbook xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main" '
        'xmlns:r="http://schemas.openxmlformats.org/officeDocument/2006/relationships">'
        '<sheets><sheet name="Invoices" sheetId="1" r:id="rId1"/></sheets>'
        "</workbook>"
    )
    rels = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
        '<Relationship Id="rId1" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" Target="xl/workbook.xml"/>'
        "</Relationships>"
    )
    workbook_rels = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
        '<Relationship Id="rId1" Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/worksheet" Target="worksheets/sheet1.xml"/>'
        "</Relationships>"
    )
    content_types = (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
        '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
        '<Default Extension="xml" ContentType="application/xml"/>'
        '<Override PartName="/xl/workbook.xml" ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml"/>'
        '<Override PartName="/xl/worksheets/sheet1.xml" ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml"/>'
        "</Types>"
    )

    output = io.BytesIO()
    with zipfile.ZipFile(output, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("[Content_Types].xml", content_types)
        zf.writestr("_rels/.rels", rels)
        zf.writestr("xl/workbook.xml", workbook)
        zf.writestr("xl/_rels/workbook.xml.rels", workbook_rels)
        zf.writestr("xl/worksheets/sheet1.xml", worksheet)
    return output.getvalue()


def _pdf_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def _build_simple_pdf(lines: list[str]) -> bytes:
    """Single-page PDF of plain text lines in Helvetica."""
    y = 800
    content_lines = ["BT", "/F1 9 Tf"]
    for line in lines:
        content_lines.append(f"1 0 0 1 40 {y} Tm ({_pdf_escape(line)[:160]}) Tj")
        y -= 13
        if y < 40:
            break
    content_lines.append("ET")
    content = "\n".join(content_lines).encode("latin-1", errors="replace")

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 595 842] "
        b"/Resources << /Font << /F1 5 0 R >> >> /Contents 4 0 R >>",
        b"<< /Length " + str(len(content)).encode("ascii") + b" >>\nstream\n" + content + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]

    pdf = bytearray(b"%PDF-1.4\n")
    offsets = []
    for i, obj in enumerate(objects, 1):
        offsets.append(len(pdf))
        pdf.extend(f"{i} 0 obj\n".encode("ascii"))
        pdf.extend(obj)
        pdf.extend(b"\nendobj\n")
    xref_start = len(pdf)
    pdf.extend(f"xref\n0 {len(objects) + 1}\n".encode("ascii"))
    pdf.extend(b"0000000000 65535 f \n")
    for offset in offsets:
        pdf.extend(f"{offset:010d} 00000 n \n".encode("ascii"))
    pdf.extend(
        (
            f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n"
            f"startxref\n{xref_start}\n%%EOF\n"
        ).encode("ascii")
    )
    return bytes(pdf)


def _render_pdf(rows: list[list[str]]) -> bytes:
    lines = [
        "Invoice Export",
        f"Invoices: {len(rows)}",
        "",
        "Number | Status | Issued | Due | Total",
        "-" * 90,
    ]
    for row in rows[:PDF_MAX_ROWS]:
        record = dict(zip(EXPORT_FIELDS, row))
        lines.append(
            f"{record['invoice_number']} | {record['status']} | {record['issued_date']} | "
            f"{record['due_date']} | {record['total_amount']} {record['currency']}"
        )
    if len(rows) > PDF_MAX_ROWS:
        lines.append(f"... {len(rows) - PDF_MAX_ROWS} more invoice(s)")
    return _build_simple_pdf(lines)


def export_invoices(db: Session, tenant_id: str, fmt: str) -> tuple[bytes, str, str]:
    """Render a tenant's invoices.

    Returns:
        (body, content_type, file_extension)

    Raises:
        ValidationFailed: for an unsupported format
    """
    normalized = (fmt or "csv").strip().lower()
    normalized = _FORMAT_ALIASES.get(normalized, normalized)
    if normalized not in ("csv", "xlsx", "pdf"):
        raise ValidationFailed(f"Unsupported export format: {fmt} (allowed: csv, xlsx, excel, pdf)")

    invoices = (
        db.query(Invoice)
        .filter(Invoice.tenant_id == coerce_uuid(tenant_id))
        .order_by(Invoice.issued_date.desc())
        .all()
    )
    rows = _invoice_rows(invoices)
    if normalized == "csv":
        return _render_csv(rows), "text/csv", "csv"
    if normalized == "xlsx":
        return (
            _render_xlsx(rows),
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            "xlsx",
        )
    return _render_pdf(rows), "application/pdf", "pdf"
