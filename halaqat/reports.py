"""PDF, chart and spreadsheet renderings of ``derivations.build_report`` output."""
import io
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

import arabic_reshaper
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
from bidi.algorithm import get_display
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.pdfmetrics import registerFontFamily
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import Image as RLImage
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

DISTRIBUTION_LABELS = {
    "excellent": "Excellent (90%+)",
    "good": "Good (70-89%)",
    "needs_attention": "Needs attention (<70%)",
}
DISTRIBUTION_COLORS = {
    "excellent": "#10b981",
    "good": "#f59e0b",
    "needs_attention": "#ef4444",
}

REPORT_FONT = "ReportArabic"
REPORT_FONT_BOLD = "ReportArabic-Bold"

# matplotlib ships DejaVu Sans, which carries the Arabic block
BUNDLED_FONT_DIR = Path(matplotlib.get_data_path()) / "fonts" / "ttf"

PDF_MEDIA_TYPE = "application/pdf"
EXCEL_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def register_report_font(font_path: Optional[str] = None) -> str:
    """Register the Arabic-capable PDF font once; ``font_path`` replaces the bundled DejaVu Sans."""
    try:
        pdfmetrics.getFont(REPORT_FONT)
    except KeyError:
        if font_path:
            regular = bold = str(font_path)
        else:
            regular = str(BUNDLED_FONT_DIR / "DejaVuSans.ttf")
            bold = str(BUNDLED_FONT_DIR / "DejaVuSans-Bold.ttf")
        pdfmetrics.registerFont(TTFont(REPORT_FONT, regular))
        pdfmetrics.registerFont(TTFont(REPORT_FONT_BOLD, bold))
        registerFontFamily(
            REPORT_FONT,
            normal=REPORT_FONT,
            bold=REPORT_FONT_BOLD,
            italic=REPORT_FONT,
            boldItalic=REPORT_FONT_BOLD,
        )
    return REPORT_FONT


def rtl(text: Any) -> str:
    """Join Arabic letters into their contextual forms and reorder the line for left-to-right drawing."""
    text = "" if text is None else str(text)
    return get_display(arabic_reshaper.reshape(text))


def scope_label(report: Dict[str, Any]) -> str:
    scope = report.get("scope") or "all"
    return "All circles" if scope == "all" else str(scope)


def create_distribution_chart(distribution: Dict[str, int]) -> io.BytesIO:
    keys = list(DISTRIBUTION_LABELS)
    sizes = [distribution.get(key, 0) for key in keys]
    counts = list(sizes)
    if sum(sizes) == 0:
        sizes = [1 for _ in sizes]
    fig, ax = plt.subplots(figsize=(5.0, 3.8))
    wedges, _, _ = ax.pie(
        sizes,
        labels=None,
        colors=[DISTRIBUTION_COLORS[key] for key in keys],
        autopct=lambda pct: f"{pct:.0f}%" if pct >= 4 else "",
        startangle=90,
        counterclock=False,
        textprops={"fontsize": 9},
    )
    ax.legend(
        wedges,
        [f"{DISTRIBUTION_LABELS[key]}: {count}" for key, count in zip(keys, counts)],
        title="Memorization",
        loc="center left",
        bbox_to_anchor=(1.0, 0.5),
        frameon=False,
        fontsize=8,
        title_fontsize=9,
    )
    ax.axis("equal")
    buffer = io.BytesIO()
    plt.tight_layout()
    plt.savefig(buffer, format="png", dpi=150)
    plt.close(fig)
    buffer.seek(0)
    return buffer


def create_halaqa_performance_chart(halaqa_performance: List[Dict[str, Any]]) -> io.BytesIO:
    names = [rtl(item["name"]) for item in halaqa_performance]
    averages = [item["average"] for item in halaqa_performance]
    fig, ax = plt.subplots(figsize=(5.4, 3.2))
    ax.bar(names, averages, color="#0f766e")
    ax.set_ylim(0, 100)
    ax.set_ylabel("Average memorization %")
    ax.set_xlabel("Circle")
    ax.tick_params(axis="x", labelsize=8, rotation=20)
    ax.tick_params(axis="y", labelsize=8)
    plt.tight_layout()
    buffer = io.BytesIO()
    plt.savefig(buffer, format="png", dpi=150)
    plt.close(fig)
    buffer.seek(0)
    return buffer


def _fmt(value: Any, suffix: str = "") -> str:
    if value is None or value == "":
        return "-"
    if isinstance(value, float):
        value = f"{value:.1f}"
    return f"{value}{suffix}"


def generate_report_pdf(report: Dict[str, Any], tz: Optional[tzinfo] = None, font_path: Optional[str] = None) -> bytes:
    font = register_report_font(font_path)
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        name="ReportTitle",
        parent=styles["Title"],
        fontName=REPORT_FONT_BOLD,
        fontSize=18,
        textColor=colors.HexColor("#0f172a"),
        spaceAfter=6,
    )
    subtitle_style = ParagraphStyle(
        name="ReportSubtitle",
        parent=styles["Normal"],
        fontName=font,
        fontSize=10,
        textColor=colors.HexColor("#475569"),
        spaceAfter=10,
    )
    section_style = ParagraphStyle(
        name="SectionHeading",
        parent=styles["Heading2"],
        fontName=REPORT_FONT_BOLD,
        fontSize=12,
        textColor=colors.HexColor("#0f766e"),
        spaceBefore=6,
        spaceAfter=6,
    )
    header_cell = ParagraphStyle(
        name="TableHeaderCell",
        parent=styles["Normal"],
        fontName=REPORT_FONT_BOLD,
        fontSize=8.5,
        textColor=colors.whitesmoke,
        leading=10,
    )
    body_cell = ParagraphStyle(
        name="TableBodyCell",
        parent=styles["Normal"],
        fontName=font,
        fontSize=8,
        textColor=colors.HexColor("#111827"),
        leading=10,
    )

    def styled_table(data: List[List[Any]], col_widths: Optional[List[int]] = None) -> Table:
        rows = [
            [Paragraph(escape(rtl(cell)), header_cell if i == 0 else body_cell) for cell in row]
            for i, row in enumerate(data)
        ]
        table = Table(rows, colWidths=col_widths, repeatRows=1, hAlign="LEFT")
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#0f766e")),
                    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                    ("GRID", (0, 0), (-1, -1), 0.4, colors.HexColor("#9ca3af")),
                    ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f8fafc")]),
                    ("LEFTPADDING", (0, 0), (-1, -1), 6),
                    ("RIGHTPADDING", (0, 0), (-1, -1), 6),
                ]
            )
        )
        return table

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, leftMargin=28, rightMargin=28, topMargin=28, bottomMargin=28)
    elements: List[Any] = []
    label = scope_label(report)

    elements.append(Paragraph(escape(f"Halaqat Report: {rtl(label)}"), title_style))
    elements.append(Paragraph(f"Generated on {datetime.now(tz).strftime('%Y-%m-%d %H:%M')}", subtitle_style))

    top_halaqa = report.get("top_halaqa") or {}
    summary = [
        ["Metric", "Value"],
        ["Scope", label],
        ["Students", _fmt(report.get("student_count"))],
        ["Average memorization", _fmt(report.get("average_memorization"), "%")],
        ["Average attendance", _fmt(report.get("average_attendance"), "%")],
        ["Top circle", _fmt(top_halaqa.get("name"))],
    ]
    elements.append(styled_table(summary, col_widths=[210, 320]))
    elements.append(Spacer(1, 10))

    elements.append(Paragraph("Performance Distribution", section_style))
    distribution = report.get("distribution") or {}
    dist_rows = [["Level", "Students"]] + [
        [DISTRIBUTION_LABELS[key], _fmt(distribution.get(key, 0))] for key in DISTRIBUTION_LABELS
    ]
    elements.append(styled_table(dist_rows, col_widths=[260, 270]))
    elements.append(Spacer(1, 8))

    halaqa_performance = report.get("halaqa_performance") or []
    charts = Table(
        [[
            RLImage(create_distribution_chart(distribution), width=250, height=200),
            RLImage(create_halaqa_performance_chart(halaqa_performance), width=250, height=190),
        ]],
        colWidths=[260, 270],
        hAlign="LEFT",
    )
    charts.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))
    elements.append(charts)
    elements.append(Spacer(1, 10))

    elements.append(Paragraph("Student Details", section_style))
    detail_rows = [["Student", "Circle", "Teacher", "Memorization", "Attendance"]]
    for row in report.get("rows") or []:
        student = row["student"]
        detail_rows.append(
            [
                student.name,
                row["halaqa_name"],
                row["teacher_name"],
                _fmt(student.memorization_progress, "%"),
                _fmt(student.attendance_rate, "%"),
            ]
        )
    if len(detail_rows) == 1:
        detail_rows.append(["-", "-", "-", "-", "-"])
    elements.append(styled_table(detail_rows, col_widths=[140, 110, 110, 85, 85]))

    doc.build(elements)
    pdf_value = buffer.getvalue()
    buffer.close()
    return pdf_value


def generate_report_excel(report: Dict[str, Any]) -> bytes:
    buffer = io.BytesIO()
    distribution = report.get("distribution") or {}
    summary_df = pd.DataFrame([
        {
            "Scope": scope_label(report),
            "Students": report.get("student_count", 0),
            "Average Memorization": report.get("average_memorization"),
            "Average Attendance": report.get("average_attendance"),
            "Top Circle": (report.get("top_halaqa") or {}).get("name"),
            **{DISTRIBUTION_LABELS[key]: distribution.get(key, 0) for key in DISTRIBUTION_LABELS},
        }
    ])
    halaqat_df = pd.DataFrame(
        [{"Circle": item["name"], "Average Memorization": item["average"]} for item in report.get("halaqa_performance") or []],
        columns=["Circle", "Average Memorization"],
    )
    students_df = pd.DataFrame(
        [
            {
                "Student": row["student"].name,
                "Circle": row["halaqa_name"],
                "Teacher": row["teacher_name"],
                "Memorization": row["student"].memorization_progress,
                "Attendance": row["student"].attendance_rate,
            }
            for row in report.get("rows") or []
        ],
        columns=["Student", "Circle", "Teacher", "Memorization", "Attendance"],
    )
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        summary_df.to_excel(writer, sheet_name="Summary", index=False)
        halaqat_df.to_excel(writer, sheet_name="Circles", index=False)
        students_df.to_excel(writer, sheet_name="Students", index=False)
    buffer.seek(0)
    return buffer.getvalue()
