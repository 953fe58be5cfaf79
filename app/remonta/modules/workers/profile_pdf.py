"""
One-page worker profile PDF for sharing with clients and coordinators.

Only the public-facing parts of the profile are rendered: first name and last initial,
languages, experience, services and the "about me" answers. Contact details are the
agency's, never the worker's.
"""
from __future__ import annotations

import io
import logging
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.remonta.modules.workers.models import WorkerProfile

logger = logging.getLogger(__name__)

BRAND_COLOR = colors.HexColor("#0f766e")
PHOTO_SIZE = 45 * mm


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle("WorkerName", parent=styles["Title"], fontSize=22, textColor=BRAND_COLOR, spaceAfter=2))
    styles.add(ParagraphStyle("WorkerRole", parent=styles["Normal"], fontSize=11, textColor=colors.gray, spaceAfter=10))
    styles.add(
        ParagraphStyle(
            "SectionTitle",
            parent=styles["Heading2"],
            fontSize=12,
            textColor=BRAND_COLOR,
            spaceBefore=10,
            spaceAfter=4,
        )
    )
    styles.add(ParagraphStyle("Body", parent=styles["Normal"], fontSize=10, leading=14))
    styles.add(ParagraphStyle("Quote", parent=styles["Normal"], fontSize=10, leading=14, leftIndent=8, textColor=colors.HexColor("#374151")))
    styles.add(ParagraphStyle("Footer", parent=styles["Normal"], fontSize=8, textColor=colors.gray, spaceBefore=16))
    return styles


def _text(value) -> str:
    return escape(str(value)).replace("\n", "<br/>")


def _photo_flowable(photo: bytes | None):
    if not photo:
        return None
    try:
        ImageReader(io.BytesIO(photo)).getSize()
    except Exception as e:
        # A broken image should not stop the export.
        logger.warning("Skipping unreadable profile photo in PDF: %s", e)
        return None
    return Image(io.BytesIO(photo), width=PHOTO_SIZE, height=PHOTO_SIZE)


def display_name(profile: WorkerProfile) -> str:
    last_initial = f" {profile.last_name[:1]}." if profile.last_name else ""
    return f"{profile.first_name}{last_initial}"


def pdf_filename(profile: WorkerProfile) -> str:
    parts = [p for p in (profile.first_name, profile.last_name) if p]
    return "_".join(p.replace(" ", "_") for p in parts) + "_Profile.pdf"


def render_profile_pdf(
    profile: WorkerProfile,
    *,
    photo: bytes | None = None,
    contact_email: str = "",
    website: str = "",
) -> bytes:
    styles = _styles()
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=16 * mm,
        bottomMargin=16 * mm,
        title=f"{display_name(profile)} - Worker Profile",
        author="Remonta",
    )

    header = [
        Paragraph(_text(display_name(profile)), styles["WorkerName"]),
        Paragraph(_text(", ".join(profile.services or []) or "Support Worker"), styles["WorkerRole"]),
    ]
    if profile.introduction:
        header.append(Paragraph(_text(profile.introduction), styles["Body"]))

    photo_cell = _photo_flowable(photo)
    story: list = []
    if photo_cell is not None:
        top = Table([[photo_cell, header]], colWidths=[PHOTO_SIZE + 6 * mm, None])
        top.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP"), ("LEFTPADDING", (0, 0), (-1, -1), 0)]))
        story.append(top)
    else:
        story.extend(header)

    about_rows = [
        ("Languages", ", ".join(profile.languages or []) or "English"),
        ("Experience", profile.experience or "Not provided"),
        ("Drive access", (profile.has_vehicle or "Not provided").capitalize()),
    ]
    location = ", ".join(p for p in (profile.city, profile.state) if p)
    if location:
        about_rows.append(("Location", location))

    story.append(Paragraph("About Me", styles["SectionTitle"]))
    about = Table(
        [[Paragraph(f"<b>{_text(label)}</b>", styles["Body"]), Paragraph(_text(value), styles["Body"])] for label, value in about_rows],
        colWidths=[40 * mm, None],
    )
    about.setStyle(
        TableStyle(
            [
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("LINEBELOW", (0, 0), (-1, -2), 0.25, colors.lightgrey),
                ("LEFTPADDING", (0, 0), (-1, -1), 0),
            ]
        )
    )
    story.append(about)

    if profile.services:
        story.append(Paragraph("Services", styles["SectionTitle"]))
        for service in profile.services:
            story.append(Paragraph(f"\u2022 {_text(service)}", styles["Body"]))

    if profile.qualifications:
        story.append(Paragraph("Qualifications", styles["SectionTitle"]))
        story.append(Paragraph(_text(profile.qualifications), styles["Body"]))

    for title, answer in (
        ("Hobbies", profile.hobbies),
        ("What makes my services unique", profile.unique_service),
        ("Why I enjoy my work", profile.why_enjoy_work),
    ):
        if answer:
            story.append(Paragraph(title, styles["SectionTitle"]))
            story.append(Paragraph(f"\u201c{_text(answer)}\u201d", styles["Quote"]))

    contact = " | ".join(p for p in (contact_email, website) if p)
    if contact:
        story.append(Spacer(1, 6 * mm))
        story.append(Paragraph(f"To book this worker contact Remonta: {_text(contact)}", styles["Footer"]))

    doc.build(story)
    return buf.getvalue()
