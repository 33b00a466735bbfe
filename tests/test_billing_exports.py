import csv
import io
import zipfile

import pytest

from app.errors import ValidationFailed
from app.services import billing as billing_service
from app.services.billing.exports import EXPORT_FIELDS


def test_csv_export(db_session, tenant, invoice):
    body, content_type, ext = billing_service.export_invoices(db_session, str(tenant.id), "csv")

    assert content_type == "text/csv"
    assert ext == "csv"
    rows = list(csv.reader(io.StringIO(body.decode("utf-8"))))
    assert rows[0] == EXPORT_FIELDS
    record = dict(zip(EXPORT_FIELDS, rows[1]))
    assert record["invoice_number"] == invoice.invoice_number
    assert record["status"] == "sent"
    assert record["total_amount"] == "100000.00"
    assert record["paid_date"] == ""


def test_csv_export_is_tenant_scoped(db_session, invoice, make_tenant):
    other = make_tenant("Toko Lain")
    body, _, _ = billing_service.export_invoices(db_session, str(other.id), "csv")
    assert body.decode("utf-8").strip().splitlines() == [",".join(EXPORT_FIELDS)]


@pytest.mark.parametrize("fmt", ["xlsx", "excel", "XLSX"])
def test_xlsx_export(db_session, tenant, invoice, fmt):
    body, content_type, ext = billing_service.export_invoices(db_session, str(tenant.id), fmt)

    assert ext == "xlsx"
    assert content_type.endswith("spreadsheetml.sheet")
    with zipfile.ZipFile(io.BytesIO(body)) as archive:
        assert "xl/worksheets/sheet1.xml" in archive.namelist()
        sheet = archive.read("xl/worksheets/sheet1.xml").decode("utf-8")
    assert invoice.invoice_number in sheet


def test_pdf_export(db_session, tenant, invoice):
    body, content_type, ext = billing_service.export_invoices(db_session, str(tenant.id), "pdf")

    assert content_type == "application/pdf"
    assert body.startswith(b"%PDF-1.4")
    assert body.rstrip().endswith(b"%%EOF")
    assert invoice.invoice_number.encode("ascii") in body


def test_unsupported_format(db_session, tenant):
    with pytest.raises(ValidationFailed):
        billing_service.export_invoices(db_session, str(tenant.id), "docx")
