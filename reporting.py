"""
Report aggregation for the admin dashboard and the exports.

Period arithmetic and chart bucketing for the hours reports, the group
distribution and top-volunteer tables, plus the CSV and PDF renderers.
"""
import calendar
import csv
from collections import OrderedDict
from datetime import datetime, date, time
from io import BytesIO, StringIO

from reportlab.lib.pagesizes import letter
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas

TIMEFRAMES = ("month", "quarter", "year")
REPORT_TYPES = ("volunteer-hours", "volunteer-distribution")


def log_hours(log) -> float:
    return (log.hours or 0) + (log.minutes or 0) / 60


def _month_start(year, month):
    return datetime(year, month, 1)


def _shift_months(year, month, delta):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def report_period(timeframe, now):
    """Return ``(start, end, prev_start, prev_end, labels)`` for a timeframe ending now."""
    if timeframe == "month":
        start = _month_start(now.year, now.month)
        prev_start = _month_start(*_shift_months(now.year, now.month, -1))
        labels = ["Week 1", "Week 2", "Week 3", "Week 4"]
    elif timeframe == "quarter":
        first_month = (now.month - 1) // 3 * 3 + 1
        start = _month_start(now.year, first_month)
        prev_start = _month_start(*_shift_months(now.year, first_month, -3))
        labels = [calendar.month_name[first_month + i] for i in range(3)]
    elif timeframe == "year":
        start = _month_start(now.year, 1)
        prev_start = _month_start(now.year - 1, 1)
        labels = ["Q1", "Q2", "Q3", "Q4"]
    else:
        raise ValueError(f"Unknown timeframe: {timeframe}")
    return start, now, prev_start, start, labels


def bucket_hours(logs, timeframe, period_start):
    """Distribute log hours over the chart buckets of a timeframe."""
    if timeframe == "month":
        data = [0.0] * 4
        for log in logs:
            data[min(3, log.date.day // 7)] += log_hours(log)
    elif timeframe == "quarter":
        data = [0.0] * 3
        for log in logs:
            offset = (log.date.month - period_start.month) % 12
            if offset < 3:
                data[offset] += log_hours(log)
    elif timeframe == "year":
        data = [0.0] * 4
        for log in logs:
            data[(log.date.month - 1) // 3] += log_hours(log)
    else:
        raise ValueError(f"Unknown timeframe: {timeframe}")
    return [round(value, 2) for value in data]


def percent_change(current, previous):
    if not previous:
        return 0.0
    return round((current - previous) / previous * 100, 1)


def group_distribution(entries, group_names, top=4):
    """Hours per group, top ``top`` groups kept and the remainder folded into ``Other``.

    ``entries`` is an iterable of ``(group_name_or_None, hours)``.
    """
    totals = OrderedDict((name, 0.0) for name in group_names)
    other = 0.0
    for group_name, hours in entries:
        if group_name is None:
            other += hours
        else:
            totals[group_name] = totals.get(group_name, 0.0) + hours

    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    kept, rest = ranked[:top], ranked[top:]
    if rest or other > 0:
        kept.append(("Other", other + sum(hours for _, hours in rest)))
    return [(name, round(hours, 2)) for name, hours in kept]


def top_volunteers(approved_logs, recent_signups, limit=5):
    """Rank volunteers by approved hours, counting their shifts this month alongside."""
    board = {}

    def _entry(user):
        if user.id not in board:
            board[user.id] = {
                "id": user.id,
                "name": user.name,
                "email": user.email,
                "total_hours": 0.0,
                "recent_shifts": 0,
            }
        return board[user.id]

    for log in approved_logs:
        _entry(log.user)["total_hours"] += log_hours(log)
    for signup in recent_signups:
        _entry(signup.user)["recent_shifts"] += 1

    ranked = sorted(board.values(), key=lambda row: row["total_hours"], reverse=True)
    for row in ranked:
        row["total_hours"] = round(row["total_hours"], 1)
    return ranked[:limit]


def period_bounds_for_dates(start_date: date, end_date: date):
    """Inclusive date range as datetimes covering both whole days."""
    return datetime.combine(start_date, time.min), datetime.combine(end_date, time.max)


# ==========================
# RENDERERS
# ==========================

def hours_report_csv(logs):
    """CSV of volunteer logs, one row per log."""
    si = StringIO()
    writer = csv.DictWriter(si, fieldnames=[
        "VolunteerName", "Email", "Date", "Hours", "Minutes", "Description"
    ])
    writer.writeheader()
    for log in logs:
        writer.writerow({
            "VolunteerName": log.user.name if log.user else "Unknown",
            "Email": log.user.email if log.user else "N/A",
            "Date": log.date.strftime("%Y-%m-%d"),
            "Hours": log.hours,
            "Minutes": log.minutes or 0,
            "Description": log.description or "",
        })
    return si.getvalue()


def shifts_csv(shifts):
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "ID", "Title", "Description", "Location", "Start", "End",
        "Capacity", "Signed Up", "Status", "Group", "Volunteers"
    ])
    for shift in shifts:
        writer.writerow([
            shift.id,
            shift.title,
            shift.description or "",
            shift.location,
            shift.start_time.strftime("%Y-%m-%d %H:%M"),
            shift.end_time.strftime("%Y-%m-%d %H:%M"),
            shift.max_volunteers,
            shift.current_volunteers,
            shift.status,
            shift.group.name if shift.group else "",
            "; ".join(s.user.name for s in shift.signups if s.user),
        ])
    return output.getvalue()


def monthly_hours_pdf(year, month, logs, generated_at=None):
    """Render the approved hours of one month as a PDF, chronologically."""
    generated_at = generated_at or datetime.now()
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    width, height = letter

    def _header(y):
        c.setFont("Helvetica-Bold", 11)
        c.drawString(1 * inch, y, "Date")
        c.drawString(2.2 * inch, y, "Volunteer")
        c.drawString(4.2 * inch, y, "Group")
        c.drawString(6.2 * inch, y, "Hours")
        c.setFont("Helvetica", 10)

    title = f"Volunteer Hours Report - {calendar.month_name[month]} {year}"
    c.setFont("Helvetica-Bold", 14)
    c.drawString(1 * inch, height - 1 * inch, title)
    c.setFont("Helvetica", 10)
    c.drawString(1 * inch, height - 1.25 * inch, f"Generated on {generated_at.strftime('%Y-%m-%d %H:%M')}")

    y = height - 1.6 * inch
    line_height = 0.22 * inch
    _header(y)
    y -= line_height

    total = 0.0
    if not logs:
        c.drawString(1 * inch, y, "No approved hours logged for this month.")
    else:
        for log in logs:
            if y < 1 * inch:
                c.showPage()
                y = height - 1 * inch
                _header(y)
                y -= line_height
            hours = log_hours(log)
            total += hours
            c.drawString(1 * inch, y, log.date.strftime("%Y-%m-%d (%a)"))
            c.drawString(2.2 * inch, y, (log.user.name if log.user else "Unknown")[:26])
            c.drawString(4.2 * inch, y, (log.group.name if log.group else "-")[:26])
            c.drawString(6.2 * inch, y, f"{hours:.2f}")
            y -= line_height

        c.setFont("Helvetica-Bold", 11)
        c.drawString(4.2 * inch, y - line_height, "Total")
        c.drawString(6.2 * inch, y - line_height, f"{total:.2f}")

    c.showPage()
    c.save()
    pdf = buf.getvalue()
    buf.close()
    return pdf
