import qrcode
from io import BytesIO
from datetime import datetime
from typing import List
from xml.sax.saxutils import escape
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib import colors
from reportlab.lib.units import mm
from reportlab.lib.enums import TA_CENTER
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Image, Table, TableStyle
from PIL import Image as PILImage

from ..models.models import Device

COLUMNS = 3
QR_SIZE = 120  # points


def generate_qr_code_image(data: str, size: int = 360) -> BytesIO:
    """Generate QR code image as BytesIO"""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    img = img.resize((size, size), PILImage.Resampling.NEAREST)

    buffer = BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return buffer


def device_scan_url(base_url: str, device_id: str) -> str:
    return f"{base_url.rstrip('/')}/device/{device_id}/scan"


def _styles():
    base = getSampleStyleSheet()
    return {
        "id": ParagraphStyle("DeviceId", parent=base["Normal"], fontName="Helvetica-Bold", fontSize=16, leading=19, alignment=TA_CENTER),
        "name": ParagraphStyle("DeviceName", parent=base["Normal"], fontSize=9, leading=11, alignment=TA_CENTER),
        "date": ParagraphStyle("DeviceDate", parent=base["Normal"], fontSize=7, leading=9, alignment=TA_CENTER, textColor=colors.grey),
        "title": ParagraphStyle("Title", parent=base["Title"], fontSize=14),
    }


def _cell(device: Device, base_url: str, styles) -> list:
    created = device.created_at.strftime("%d/%m/%Y") if device.created_at else ""
    return [
        Image(generate_qr_code_image(device_scan_url(base_url, device.id)), width=QR_SIZE, height=QR_SIZE),
        Spacer(1, 2 * mm),
        Paragraph(escape(device.id), styles["id"]),
        Paragraph(escape(device.name), styles["name"]),
        Paragraph(f"Creato il {created}" if created else "", styles["date"]),
    ]


def build_device_qr_pdf(devices: List[Device], base_url: str) -> bytes:
    """A4 sheet with one QR code per device, three per row."""
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=12 * mm,
        rightMargin=12 * mm,
        topMargin=12 * mm,
        bottomMargin=12 * mm,
        title="QR code punti di controllo",
    )
    styles = _styles()
    story = [Paragraph("QR code punti di controllo", styles["title"]), Spacer(1, 4 * mm)]

    if not devices:
        story.append(Paragraph("Nessun punto di controllo trovato", styles["name"]))
    else:
        cells = [_cell(d, base_url, styles) for d in devices]
        rows = [cells[i:i + COLUMNS] for i in range(0, len(cells), COLUMNS)]
        rows[-1] += [""] * (COLUMNS - len(rows[-1]))
        col_width = (A4[0] - 24 * mm) / COLUMNS
        table = Table(rows, colWidths=[col_width] * COLUMNS)
        table.setStyle(TableStyle([
            ("ALIGN", (0, 0), (-1, -1), "CENTER"),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("BOX", (0, 0), (-1, -1), 0.25, colors.lightgrey),
            ("INNERGRID", (0, 0), (-1, -1), 0.25, colors.lightgrey),
            ("TOPPADDING", (0, 0), (-1, -1), 8),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 8),
        ]))
        story.append(table)

    doc.build(story)
    return buffer.getvalue()


def qr_pdf_filename(now: datetime = None) -> str:
    now = now or datetime.now()
    return f"qrcodes-dispositivi-{now.strftime('%Y%m%d-%H%M')}.pdf"
