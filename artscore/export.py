"""Result exports: CSV for spreadsheets, PDF for printing."""

import csv
from datetime import date
from io import BytesIO, StringIO

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .aggregator import ResultRow

RESULTS_HEADERS = ['Rank', 'Performance', 'Performer', 'Average', 'Total', 'Votes']
BOM = '\ufeff'


def format_number(value) -> str:
    """``17.0`` -> ``"17"``, ``7.5`` -> ``"7.5"``."""
    return f"{value:g}"


def result_cells(row: ResultRow) -> list:
    return [
        row.rank,
        row.performance.name,
        row.performance.performer,
        f"{row.average:.2f}",
        format_number(row.total),
        row.votes,
    ]


def build_results_csv(rows: list[ResultRow], delimiter: str = ',') -> str:
    """CSV text led by a byte-order mark so spreadsheet tools read it as UTF-8.

    Fields holding the delimiter, a quote or a newline are quoted, with
    internal quotes doubled.
    """
    output = StringIO()
    writer = csv.writer(output, delimiter=delimiter, quoting=csv.QUOTE_MINIMAL, lineterminator='\n')
    writer.writerow(RESULTS_HEADERS)
    for row in rows:
        writer.writerow(result_cells(row))
    return BOM + output.getvalue()


def results_filename(extension: str = 'csv', day: date | None = None) -> str:
    day = day or date.today()
    return f"results_{day.isoformat()}.{extension}"


def build_results_pdf(rows: list[ResultRow], title: str) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=letter, rightMargin=30, leftMargin=30, topMargin=30, bottomMargin=30)
    elements = []
    styles = getSampleStyleSheet()

    title_style = ParagraphStyle(
        'ResultsTitle',
        parent=styles['Heading1'],
        fontSize=16,
        textColor=colors.HexColor('#c2410c'),
        spaceAfter=5,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    )
    elements.append(Paragraph(f"<b>{escape_markup(title.upper())} RESULTS</b>", title_style))
    elements.append(Spacer(1, 12))

    cell_style = ParagraphStyle('Cell', parent=styles['Normal'], fontSize=9, leading=11)
    table_data = [RESULTS_HEADERS]
    for row in rows:
        cells = result_cells(row)
        cells[1] = Paragraph(escape_markup(cells[1]), cell_style)
        cells[2] = Paragraph(escape_markup(cells[2]), cell_style)
        table_data.append(cells)

    table = Table(table_data, colWidths=[0.6*inch, 2.4*inch, 2.0*inch, 0.9*inch, 0.8*inch, 0.7*inch], repeatRows=1)
    table.setStyle(TableStyle([
        ('GRID', (0, 0), (-1, -1), 0.5, colors.black),
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#ea580c')),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, 0), 10),
        ('FONTSIZE', (0, 1), (-1, -1), 9),
        ('ALIGN', (0, 0), (-1, 0), 'CENTER'),
        ('ALIGN', (3, 1), (-1, -1), 'RIGHT'),
        ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
    ]))
    elements.append(table)

    doc.build(elements)
    pdf = buffer.getvalue()
    buffer.close()
    return pdf


def escape_markup(text) -> str:
    return str(text).replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')
