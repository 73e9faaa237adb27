"""
Ticket Planner
Expands parent tickets into scheduled child tickets from templates, keeps them
in an Excel workbook, and lays parent/child tickets out as a colored
calendar-style Gantt sheet.

Features:
  - Template-driven child tickets (start offset + duration from the parent start)
  - Sequential T-### ticket ids allocated in one batch per operation
  - Gantt layout with status, overdue, holiday and weekend coloring
  - Versioned status schemas (3-state and 4-state)
  - Starter workbook with dropdowns for type, status and assignee
"""

import argparse
import difflib
import math
import os
import re
import sys
from datetime import date, datetime, timedelta

import pandas as pd
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.worksheet.datavalidation import DataValidation


# ── Constants ────────────────────────────────────────────────────────────────

_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_INPUT = os.path.join(_DIR, "tickets.xlsx")

SHEET_NAMES = {
    "tickets": "Tickets",
    "templates": "Templates",
    "assignees": "Assignees",
    "settings": "Settings",
    "holidays": "Holidays",
}
GANTT_SHEET_PREFIX = "Gantt_"

TICKET_COLUMNS = [
    "ID", "Parent ID", "Type", "Name", "Description", "Assignee",
    "Status", "Start Date", "End Date", "Created At",
]
TEMPLATE_COLUMNS = ["Name", "Description", "Start Offset", "Duration"]
ASSIGNEE_COLUMNS = ["Name", "Email"]
SETTINGS_COLUMNS = ["Setting", "Value"]
HOLIDAY_COLUMNS = ["Date", "Name"]

ID_PREFIX = "T-"
ID_MIN_DIGITS = 3
_ID_RE = re.compile(r"^T-(\d+)$")
_HEX_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")

KIND_PARENT = "parent"
KIND_CHILD = "child"
KIND_LABELS = {KIND_PARENT: "Parent", KIND_CHILD: "Child"}

STATUS_NOT_STARTED = "notStarted"
STATUS_COMPLETED = "completed"

# Each schema maps status key -> (display label, child color setting).
# Order matters: it drives dropdowns and legends.
STATUS_SCHEMAS = {
    "v1": {
        "notStarted": ("Not Started", "child_color_not_started"),
        "inProgress": ("In Progress", "child_color_in_progress"),
        "completed": ("Completed", "child_color_completed"),
    },
    "v2": {
        "notStarted": ("Not Started", "child_color_not_started"),
        "inProgress": ("In Progress", "child_color_in_progress"),
        "processed": ("Processed", "child_color_processed"),
        "completed": ("Completed", "child_color_completed"),
    },
}
DEFAULT_SCHEMA = "v2"

WHITE = "#FFFFFF"

DEFAULT_SETTINGS = {
    "parent_color": "#DDEFE5",
    "child_color_not_started": "#EE7F77",
    "child_color_in_progress": "#4389C5",
    "child_color_processed": "#5DB5A5",
    "child_color_completed": "#A1AF2F",
    "overdue_color": "#EE7F77",
    "today_color": "#FFF59D",
    "saturday_color": "#BBDEFB",
    "sunday_color": "#FFCDD2",
    "holiday_color": "#FFCDD2",
    "header_bg_color": "#E3F2FD",
}

SETTING_LABELS = {
    "parent_color": "Parent Color",
    "child_color_not_started": "Child Color - Not Started",
    "child_color_in_progress": "Child Color - In Progress",
    "child_color_processed": "Child Color - Processed",
    "child_color_completed": "Child Color - Completed",
    "overdue_color": "Overdue Color",
    "today_color": "Today Color",
    "saturday_color": "Saturday Color",
    "sunday_color": "Sunday Color",
    "holiday_color": "Holiday Color",
    "header_bg_color": "Header Background Color",
}

HIGHLIGHT_POLICIES = ("overdue", "today")
PARENT_END_POLICIES = ("input", "derived")
DETAIL_COLUMNS = (None, "description", "memo")

# Example content, only used when generating the starter workbook via --template.
EXAMPLE_TEMPLATES = [
    ["Requirements", "Collect and agree requirements", 0, 3],
    ["Design", "// review with the team\nDraft the design document", 3, 4],
    ["Implementation", "Build and unit test", 7, 5],
    ["Release", "Deploy and hand over", 12, 2],
]
EXAMPLE_ASSIGNEES = [
    ["Team Lead", "lead@example.com"],
    ["Developer", "dev@example.com"],
]
EXAMPLE_HOLIDAYS = [
    ["2026-01-01", "New Year's Day"],
    ["2026-04-03", "Good Friday"],
    ["2026-04-06", "Easter Monday"],
    ["2026-05-04", "Early May Bank Holiday"],
    ["2026-12-25", "Christmas Day"],
]


# ── Errors ───────────────────────────────────────────────────────────────────

class PlannerError(ValueError):
    """A validation failure with a stable kind and a readable detail."""

    kind = "planner_error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"kind": self.kind, "message": self.message}


class UnknownAssigneeError(PlannerError):
    kind = "unknown_assignee"

    def __init__(self, assignee, roster=None):
        self.assignee = assignee
        known = [str(name) for name in roster] if roster else []
        close = difflib.get_close_matches(str(assignee), known, n=1, cutoff=0.4)
        hint = f" Did you mean: '{close[0]}'?" if close else ""
        super().__init__(f"Assignee '{assignee}' not found in Assignees sheet.{hint}")


class NoTemplatesConfiguredError(PlannerError):
    kind = "no_templates_configured"

    def __init__(self):
        super().__init__("No templates configured. Add at least one row to the Templates sheet.")


class InvalidDateOrderError(PlannerError):
    kind = "invalid_date_order"

    def __init__(self, start, end, context=""):
        self.start = start
        self.end = end
        ctx = f"{context}: " if context else ""
        super().__init__(f"{ctx}end date {end.strftime('%Y-%m-%d')} is before "
                         f"start date {start.strftime('%Y-%m-%d')}")


class UnknownParentReferenceError(PlannerError):
    kind = "unknown_parent_reference"

    def __init__(self, parent_id, reason="does not exist"):
        self.parent_id = parent_id
        super().__init__(f"Parent ticket '{parent_id}' {reason}")


class InvalidTicketError(PlannerError):
    kind = "invalid_ticket"


class InvalidTemplateError(PlannerError):
    kind = "invalid_template"


# ── Date Helpers ─────────────────────────────────────────────────────────────

def norm_date(d):
    """Normalise to a midnight datetime for safe comparisons and set membership."""
    if isinstance(d, pd.Timestamp):
        d = d.to_pydatetime()
    if not isinstance(d, date):
        raise TypeError(f"norm_date expected a date, got {type(d).__name__}: {d!r}")
    return datetime(d.year, d.month, d.day)


def clean_str(val):
    """Return stripped string or empty string for NaN/None."""
    if val is None or (isinstance(val, float) and math.isnan(val)):
        return ""
    if val is pd.NaT:
        return ""
    return str(val).strip()


def parse_date(val, context=""):
    """Parse date from an Excel cell or CLI flag: datetime, Timestamp, or string."""
    ctx = f" ({context})" if context else ""
    if val is None or val is pd.NaT or (isinstance(val, float) and math.isnan(val)):
        raise ValueError(f"Date is blank{ctx}")
    if isinstance(val, (datetime, pd.Timestamp, date)):
        return norm_date(val)
    if isinstance(val, str):
        val = val.strip()
        if not val:
            raise ValueError(f"Date is blank{ctx}")
        for fmt in ("%Y-%m-%d", "%Y/%m/%d", "%d/%m/%Y", "%d-%m-%Y"):
            try:
                return norm_date(datetime.strptime(val, fmt))
            except ValueError:
                pass
        raise ValueError(f"Cannot parse date{ctx}: {val!r}. Expected YYYY-MM-DD or DD/MM/YYYY")
    raise ValueError(f"Cannot parse date{ctx}: {val!r}")


def add_days(d, days):
    """Return a new midnight datetime `days` after `d` (negative goes back)."""
    return norm_date(d) + timedelta(days=days)


def days_between(start, end):
    """Number of calendar days from start to end, both inclusive."""
    return (norm_date(end) - norm_date(start)).days + 1


def generate_date_range(start, end):
    """Every calendar day from start to end inclusive (empty if end < start)."""
    d, end_d = norm_date(start), norm_date(end)
    dates = []
    while d <= end_d:
        dates.append(d)
        d += timedelta(days=1)
    return dates


def format_short(d):
    """'4/1' style column label."""
    return f"{d.month}/{d.day}"


def format_long(d):
    return norm_date(d).strftime("%Y/%m/%d")


def overlaps(a_start, a_end, b_start, b_end):
    """True when two inclusive date ranges share at least one day."""
    return norm_date(a_start) <= norm_date(b_end) and norm_date(a_end) >= norm_date(b_start)


def calculate_date_range(parents):
    """Return (min start_date, max end_date) over the given tickets."""
    if not parents:
        raise ValueError("Cannot calculate a date range from an empty ticket list")
    start = min(norm_date(t["start_date"]) for t in parents)
    end = max(norm_date(t["end_date"]) for t in parents)
    return start, end


# ── Ticket IDs ───────────────────────────────────────────────────────────────

def parse_ticket_id(ticket_id):
    """Return the numeric suffix of a 'T-001' style id, or None if it is not one."""
    if not isinstance(ticket_id, str):
        return None
    m = _ID_RE.match(ticket_id.strip())
    if not m:
        return None
    number = int(m.group(1))
    return number if number > 0 else None


def is_valid_ticket_id(ticket_id):
    return parse_ticket_id(ticket_id) is not None


def format_ticket_id(number):
    """1 -> 'T-001', 1000 -> 'T-1000'."""
    return f"{ID_PREFIX}{number:0{ID_MIN_DIGITS}d}"


def allocate_ids(existing_ids, count):
    """Next `count` sequential ids after the highest valid id in existing_ids.

    Ids that do not parse are ignored. All ids come from one snapshot, so a
    batch never repeats an existing id or one of its own.
    """
    if count < 0:
        raise ValueError(f"count must be zero or positive, got {count}")
    numbers = [n for n in (parse_ticket_id(i) for i in existing_ids) if n is not None]
    highest = max(numbers, default=0)
    return [format_ticket_id(highest + offset) for offset in range(1, count + 1)]


# ── Status Schemas ───────────────────────────────────────────────────────────

def get_status_table(schema=DEFAULT_SCHEMA):
    """Resolve a schema name (or an explicit status table) to its status table."""
    if isinstance(schema, dict):
        return schema
    try:
        return STATUS_SCHEMAS[schema]
    except KeyError:
        raise ValueError(f"Unknown status schema {schema!r}. "
                         f"Valid: {', '.join(STATUS_SCHEMAS)}") from None


def status_labels(schema=DEFAULT_SCHEMA):
    return [label for label, _ in get_status_table(schema).values()]


def status_label(status, schema=DEFAULT_SCHEMA):
    table = get_status_table(schema)
    if status in table:
        return table[status][0]
    return str(status)


def status_from_label(label, schema=DEFAULT_SCHEMA):
    """Reverse lookup (case-insensitive); None if the label is not in the schema."""
    wanted = clean_str(label).lower()
    for key, (text, _) in get_status_table(schema).items():
        if text.lower() == wanted or key.lower() == wanted:
            return key
    return None


# ── Tickets ──────────────────────────────────────────────────────────────────

def make_ticket(ticket_id, parent_id, kind, name, description, assignee, status,
                start_date, end_date, created_at):
    """Build a ticket dict with the frozen field order."""
    return {
        "id": ticket_id,
        "parent_id": parent_id,
        "kind": kind,
        "name": name,
        "description": description,
        "assignee": assignee,
        "status": status,
        "start_date": norm_date(start_date),
        "end_date": norm_date(end_date),
        "created_at": created_at,
    }


def id_sort_key(ticket_id):
    """Numeric ordering for valid ids; unparseable ids after them, by string."""
    number = parse_ticket_id(ticket_id)
    if number is None:
        return (1, 0, str(ticket_id))
    return (0, number, str(ticket_id))


def ticket_sort_key(ticket):
    return (norm_date(ticket["start_date"]), norm_date(ticket["end_date"]),
            id_sort_key(ticket["id"]))


def sort_tickets(tickets):
    """Ascending by start date, then end date, then id. Returns a new list."""
    return sorted(tickets, key=ticket_sort_key)


def extract_memo(description):
    """First line starting with '//' in a description, without the marker."""
    if not description:
        return ""
    for line in str(description).splitlines():
        stripped = line.strip()
        if stripped.startswith("//"):
            return stripped[2:].strip()
    return ""


def is_valid_color(value):
    return isinstance(value, str) and bool(_HEX_RE.match(value))


class TicketStore:
    """In-memory ticket table.

    Serves the Gantt builder (find_parents_in_period / find_children) and id
    allocation (ids). Loaded from and appended to the Tickets sheet by
    load_ticket_store / save_ticket_rows.
    """

    def __init__(self, tickets=None):
        self._tickets = [dict(t) for t in tickets or []]

    def __len__(self):
        return len(self._tickets)

    def find_all(self):
        return [dict(t) for t in self._tickets]

    def find_parents(self):
        return [dict(t) for t in self._tickets if t["kind"] == KIND_PARENT]

    def find_children(self, parent_id=None):
        children = [dict(t) for t in self._tickets if t["kind"] == KIND_CHILD]
        if parent_id is not None:
            children = [t for t in children if t["parent_id"] == parent_id]
        return children

    def find_by_id(self, ticket_id):
        for t in self._tickets:
            if t["id"] == ticket_id:
                return dict(t)
        return None

    def find_parents_in_period(self, start, end):
        return [t for t in self.find_parents()
                if overlaps(t["start_date"], t["end_date"], start, end)]

    def ids(self):
        return [t["id"] for t in self._tickets]

    def save_all(self, tickets):
        self._tickets.extend(dict(t) for t in tickets)


def _check_date_order(start, end, context=""):
    if norm_date(end) < norm_date(start):
        raise InvalidDateOrderError(norm_date(start), norm_date(end), context)


def create_ticket(store, roster, name, description, assignee, start_date, end_date,
                  parent_id=None, now=None):
    """Create one parent (or, with parent_id, child) ticket and save it to the store."""
    name = clean_str(name)
    if not name:
        raise InvalidTicketError("Ticket name is required.")
    if assignee not in roster:
        raise UnknownAssigneeError(assignee, roster)
    _check_date_order(start_date, end_date, context=f"Ticket '{name}'")

    if parent_id:
        parent = store.find_by_id(parent_id)
        if parent is None:
            raise UnknownParentReferenceError(parent_id)
        if parent["kind"] != KIND_PARENT:
            raise UnknownParentReferenceError(parent_id, reason="is not a parent ticket")

    ticket_id = allocate_ids(store.ids(), 1)[0]
    ticket = make_ticket(
        ticket_id, parent_id or None, KIND_CHILD if parent_id else KIND_PARENT,
        name, description or "", assignee, STATUS_NOT_STARTED,
        start_date, end_date, now or datetime.now(),
    )
    store.save_all([ticket])
    return ticket


def save_tickets(store, roster, tickets):
    """Validate every ticket, then save them all. Nothing is saved on failure."""
    batch_parents = {t["id"] for t in tickets if t["kind"] == KIND_PARENT}
    for t in tickets:
        if t["assignee"] not in roster:
            raise UnknownAssigneeError(t["assignee"], roster)
        _check_date_order(t["start_date"], t["end_date"], context=f"Ticket '{t['name']}'")
        if t["kind"] == KIND_CHILD and t["parent_id"] not in batch_parents:
            parent = store.find_by_id(t["parent_id"])
            if parent is None:
                raise UnknownParentReferenceError(t["parent_id"])
            if parent["kind"] != KIND_PARENT:
                raise UnknownParentReferenceError(t["parent_id"], reason="is not a parent ticket")
    store.save_all(tickets)


def ticket_hierarchy(store):
    """[(parent, [children])] with parents and children in display order."""
    return [(p, sort_tickets(store.find_children(p["id"])))
            for p in sort_tickets(store.find_parents())]


# ── Template Expansion ───────────────────────────────────────────────────────

def validate_template(template):
    """Raise InvalidTemplateError unless offset >= 0 and duration >= 1."""
    name = template.get("name", "")
    if template["start_offset"] < 0:
        raise InvalidTemplateError(
            f"Template '{name}': start offset must be 0 or more (got {template['start_offset']})")
    if template["duration"] < 1:
        raise InvalidTemplateError(
            f"Template '{name}': duration must be at least 1 day (got {template['duration']})")


def child_schedule(parent_start, template):
    """(start, end) of the child a template produces for a parent start date."""
    start = add_days(parent_start, template["start_offset"])
    end = add_days(start, template["duration"] - 1)
    return start, end


def derived_parent_end(parent_start, templates):
    """End of the latest-finishing child."""
    latest = max(t["start_offset"] + t["duration"] - 1 for t in templates)
    return add_days(parent_start, latest)


def expand_template(parent_spec, templates, roster, existing_ids,
                    parent_end_policy="input", now=None):
    """Expand a parent spec into a parent ticket and one child per template.

    parent_spec holds name, description, assignee, start_date and, under the
    'input' end policy, end_date. Under 'derived' the parent ends with its
    latest child. All checks run before any id is allocated.

    Returns {"parent": ticket, "children": [tickets]}.
    """
    if parent_end_policy not in PARENT_END_POLICIES:
        raise ValueError(f"Unknown parent end policy {parent_end_policy!r}. "
                         f"Valid: {', '.join(PARENT_END_POLICIES)}")

    name = clean_str(parent_spec.get("name"))
    if not name:
        raise InvalidTicketError("Parent ticket name is required.")
    assignee = clean_str(parent_spec.get("assignee"))
    if assignee not in roster:
        raise UnknownAssigneeError(assignee, roster)
    if not templates:
        raise NoTemplatesConfiguredError()
    for template in templates:
        validate_template(template)

    start = norm_date(parent_spec["start_date"])
    if parent_end_policy == "input":
        if parent_spec.get("end_date") is None:
            raise InvalidTicketError("Parent end date is required when the end date is entered by hand.")
        end = norm_date(parent_spec["end_date"])
        _check_date_order(start, end, context=f"Ticket '{name}'")
    else:
        end = derived_parent_end(start, templates)

    ids = allocate_ids(existing_ids, 1 + len(templates))
    created_at = now or datetime.now()
    description = parent_spec.get("description") or ""

    parent = make_ticket(ids[0], None, KIND_PARENT, name, description, assignee,
                         STATUS_NOT_STARTED, start, end, created_at)
    children = []
    for child_id, template in zip(ids[1:], templates):
        child_start, child_end = child_schedule(start, template)
        children.append(make_ticket(
            child_id, parent["id"], KIND_CHILD, template["name"],
            template.get("description", ""), assignee, STATUS_NOT_STARTED,
            child_start, child_end, created_at,
        ))
    return {"parent": parent, "children": children}


# ── Color Rules ──────────────────────────────────────────────────────────────

def merge_settings(values=None):
    """Defaults overlaid with any non-blank values given."""
    settings = dict(DEFAULT_SETTINGS)
    for key, value in (values or {}).items():
        if key in settings and value:
            settings[key] = value
    return settings


def _setting(settings, key):
    return (settings or {}).get(key) or DEFAULT_SETTINGS[key]


def ticket_color(settings, is_parent, status, schema=DEFAULT_SCHEMA):
    """Parents share one color; children are colored by status."""
    if is_parent:
        return _setting(settings, "parent_color")
    table = get_status_table(schema)
    color_key = table[status][1] if status in table else "child_color_not_started"
    return _setting(settings, color_key)


def is_overdue(ticket, today):
    """Not completed and the end date is strictly before today."""
    return (ticket["status"] != STATUS_COMPLETED
            and norm_date(ticket["end_date"]) < norm_date(today))


def calendar_facts(day, holidays=None, today=None):
    d = norm_date(day)
    return {
        "is_holiday": bool(holidays) and d in holidays,
        "is_saturday": d.weekday() == 5,
        "is_sunday": d.weekday() == 6,
        "is_today": today is not None and d == norm_date(today),
    }


def cell_color(ticket, day, is_parent, is_end_date, overdue, calendar, settings,
               schema=DEFAULT_SCHEMA, highlight="overdue"):
    """Background of one calendar cell in a ticket row. First matching rule wins:

      1. overdue ticket, on its end date       -> overdue color ('overdue' policy)
      2. inside the ticket's range             -> parent / status color
      3. today, outside the range              -> today color ('today' policy)
      4. holiday -> holiday color, 5. Sunday -> Sunday color,
      6. Saturday -> Saturday color, otherwise white.
    """
    d = norm_date(day)
    in_range = norm_date(ticket["start_date"]) <= d <= norm_date(ticket["end_date"])
    if in_range:
        if highlight == "overdue" and overdue and is_end_date:
            return _setting(settings, "overdue_color")
        return ticket_color(settings, is_parent, ticket["status"], schema)
    if highlight == "today" and calendar["is_today"]:
        return _setting(settings, "today_color")
    if calendar["is_holiday"]:
        return _setting(settings, "holiday_color")
    if calendar["is_sunday"]:
        return _setting(settings, "sunday_color")
    if calendar["is_saturday"]:
        return _setting(settings, "saturday_color")
    return WHITE


def header_color(day, calendar, settings):
    """Holidays share the Sunday color in the header row."""
    if calendar["is_holiday"] or calendar["is_sunday"]:
        return _setting(settings, "sunday_color")
    if calendar["is_saturday"]:
        return _setting(settings, "saturday_color")
    return _setting(settings, "header_bg_color")


# ── Gantt Layout ─────────────────────────────────────────────────────────────

def fixed_headers(detail_column=None):
    """Labels of the non-calendar columns, with the optional detail column."""
    if detail_column not in DETAIL_COLUMNS:
        raise ValueError(f"Unknown detail column {detail_column!r}. "
                         f"Valid: none, description, memo")
    headers = ["Parent Ticket", "Child Ticket"]
    if detail_column == "description":
        headers.append("Description")
    elif detail_column == "memo":
        headers.append("Memo")
    headers += ["Assignee", "Status", "Start Date", "End Date"]
    return headers


def _detail(ticket, detail_column):
    if detail_column == "description":
        return ticket["description"] or ""
    if detail_column == "memo":
        return extract_memo(ticket["description"])
    return ""


def _gantt_row(ticket, parent_name, role, date_range, detail_column, schema):
    return {
        "role": role,
        "parent_name": parent_name,
        "child_name": ticket["name"] if role == KIND_CHILD else "",
        "detail": _detail(ticket, detail_column),
        "assignee": ticket["assignee"],
        "status": status_label(ticket["status"], schema),
        "start_date": format_long(ticket["start_date"]),
        "end_date": format_long(ticket["end_date"]),
        "date_cells": ["" for _ in date_range],
    }


def _row_backgrounds(ticket, is_parent, date_range, facts, today, settings, schema,
                     highlight, fixed_count):
    end = norm_date(ticket["end_date"])
    overdue = is_overdue(ticket, today)
    colors = [WHITE] * fixed_count
    for d, calendar in zip(date_range, facts):
        colors.append(cell_color(ticket, d, is_parent, d == end, overdue, calendar,
                                 settings, schema, highlight))
    return colors


def row_values(row, detail_column=None):
    """Cell values of a layout row, in header order."""
    values = [row["parent_name"], row["child_name"]]
    if detail_column is not None:
        values.append(row["detail"])
    values += [row["assignee"], row["status"], row["start_date"], row["end_date"]]
    return values + list(row["date_cells"])


def build_gantt_layout(date_from, date_to, ticket_source, settings, holiday_source, today,
                       schema=DEFAULT_SCHEMA, detail_column=None, highlight="overdue"):
    """Build headers, rows and color matrices for parents overlapping the period.

    The calendar columns span the selected parents (min start to max end), not
    the requested period. `today` drives overdue/today coloring and must be
    passed in. holiday_source is a (start, end) -> dates callable or None.
    """
    date_from, date_to = norm_date(date_from), norm_date(date_to)
    _check_date_order(date_from, date_to, context="Gantt period")
    if highlight not in HIGHLIGHT_POLICIES:
        raise ValueError(f"Unknown highlight policy {highlight!r}. "
                         f"Valid: {', '.join(HIGHLIGHT_POLICIES)}")
    headers = fixed_headers(detail_column)
    fixed_count = len(headers)
    today = norm_date(today)
    header_bg = _setting(settings, "header_bg_color")

    parents = sort_tickets(ticket_source.find_parents_in_period(date_from, date_to))
    if not parents:
        return {
            "headers": headers,
            "rows": [],
            "backgrounds": [],
            "header_backgrounds": [header_bg] * fixed_count,
            "date_range": [],
            "detail_column": detail_column,
        }

    start, end = calculate_date_range(parents)
    date_range = generate_date_range(start, end)
    holidays = set()
    if holiday_source is not None:
        holidays = {norm_date(h) for h in holiday_source(start, end)}
    facts = [calendar_facts(d, holidays, today) for d in date_range]

    headers += [format_short(d) for d in date_range]
    header_backgrounds = [header_bg] * fixed_count
    header_backgrounds += [header_color(d, calendar, settings)
                           for d, calendar in zip(date_range, facts)]

    rows = []
    backgrounds = []
    for parent in parents:
        rows.append(_gantt_row(parent, parent["name"], KIND_PARENT, date_range,
                               detail_column, schema))
        backgrounds.append(_row_backgrounds(parent, True, date_range, facts, today,
                                            settings, schema, highlight, fixed_count))
        for child in sort_tickets(ticket_source.find_children(parent["id"])):
            rows.append(_gantt_row(child, parent["name"], KIND_CHILD, date_range,
                                   detail_column, schema))
            backgrounds.append(_row_backgrounds(child, False, date_range, facts, today,
                                                settings, schema, highlight, fixed_count))

    return {
        "headers": headers,
        "rows": rows,
        "backgrounds": backgrounds,
        "header_backgrounds": header_backgrounds,
        "date_range": date_range,
        "detail_column": detail_column,
    }


def holiday_lookup(holidays):
    """Wrap a holiday set as a (start, end) -> sorted holidays-in-window source."""
    def lookup(start, end):
        s, e = norm_date(start), norm_date(end)
        return sorted(h for h in holidays if s <= norm_date(h) <= e)
    return lookup


# ── Workbook Template ────────────────────────────────────────────────────────

SHEET_DESCRIPTIONS = {
    "tickets": "parent and child tickets (filled by --create)",
    "templates": "child tickets created for every new parent",
    "assignees": "people tickets can be assigned to",
    "settings": "Gantt colors (blank values fall back to defaults)",
    "holidays": "dates shaded as holidays on the Gantt",
}


def _fill_settings_rows(ws):
    """Write every setting with its default value and a color preview fill."""
    for row_idx, (key, label) in enumerate(SETTING_LABELS.items(), start=2):
        ws.cell(row=row_idx, column=1, value=label)
        color_cell = ws.cell(row=row_idx, column=2, value=DEFAULT_SETTINGS[key])
        color_cell.fill = _solid_fill(color_cell.value)


def generate_template(output_path, schema=DEFAULT_SCHEMA):
    """Create a starter workbook with Tickets, Templates, Assignees, Settings and
    Holidays sheets, example data and dropdowns.

    If the workbook already exists only the missing sheets are added; sheets
    that are already there (and any tickets in them) are left untouched.
    Returns the list of sheet keys that were created.
    """
    existing = os.path.exists(output_path)
    wb = load_workbook(output_path) if existing else Workbook()
    placeholder = None if existing else wb.active

    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_fill = PatternFill(start_color="2E3B4E", end_color="2E3B4E", fill_type="solid")
    header_alignment = Alignment(horizontal="center", vertical="center")
    thin_border = Border(
        left=Side(style="thin"), right=Side(style="thin"),
        top=Side(style="thin"), bottom=Side(style="thin"),
    )

    def style_header(ws, row=1):
        for cell in ws[row]:
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = header_alignment
            cell.border = thin_border

    created = []

    def add_sheet(key, columns, rows=()):
        if SHEET_NAMES[key] in wb.sheetnames:
            return None
        ws = wb.create_sheet(SHEET_NAMES[key])
        ws.append(columns)
        for row in rows:
            ws.append(row)
        style_header(ws)
        created.append(key)
        return ws

    # ── Sheet 1: Tickets (empty, filled by --create) ──
    ws_tickets = add_sheet("tickets", TICKET_COLUMNS)
    if ws_tickets is not None:
        max_ticket_row = 500
        dv_type = DataValidation(type="list", formula1=f'"{",".join(KIND_LABELS.values())}"',
                                 allow_blank=False)
        dv_type.error = "Please select Parent or Child"
        dv_type.errorTitle = "Invalid Type"
        ws_tickets.add_data_validation(dv_type)
        dv_type.add(f"C2:C{max_ticket_row}")

        dv_status = DataValidation(type="list", formula1=f'"{",".join(status_labels(schema))}"',
                                   allow_blank=False)
        dv_status.error = "Please select a valid status"
        dv_status.errorTitle = "Invalid Status"
        ws_tickets.add_data_validation(dv_status)
        dv_status.add(f"G2:G{max_ticket_row}")

        dv_assignee = DataValidation(type="list",
                                     formula1=f"={SHEET_NAMES['assignees']}!$A$2:$A$100",
                                     allow_blank=False)
        dv_assignee.error = "Please select an assignee from the Assignees sheet"
        dv_assignee.errorTitle = "Invalid Assignee"
        ws_tickets.add_data_validation(dv_assignee)
        dv_assignee.add(f"F2:F{max_ticket_row}")

    # ── Sheet 2: Templates ──
    add_sheet("templates", TEMPLATE_COLUMNS, EXAMPLE_TEMPLATES)

    # ── Sheet 3: Assignees ──
    add_sheet("assignees", ASSIGNEE_COLUMNS, EXAMPLE_ASSIGNEES)

    # ── Sheet 4: Settings ──
    ws_settings = add_sheet("settings", SETTINGS_COLUMNS)
    if ws_settings is not None:
        _fill_settings_rows(ws_settings)

    # ── Sheet 5: Holidays ──
    add_sheet("holidays", HOLIDAY_COLUMNS, EXAMPLE_HOLIDAYS)

    if placeholder is not None:
        wb.remove(placeholder)

    if existing and not created:
        print(f"Template already complete: {output_path} (no sheets added)")
        return created

    wb.save(output_path)
    print(f"Template {'updated' if existing else 'created'}: {output_path}")
    for key in created:
        print(f"  - Sheet '{SHEET_NAMES[key]}': {SHEET_DESCRIPTIONS[key]}")
    return created


def reset_settings(filepath):
    """Rewrite the 'Settings' sheet rows with the default colors.

    The header row is kept; the sheet is created if it is missing.
    """
    wb = load_workbook(filepath)
    sheet = SHEET_NAMES["settings"]
    if sheet in wb.sheetnames:
        ws = wb[sheet]
        if ws.max_row > 1:
            ws.delete_rows(2, ws.max_row - 1)
    else:
        ws = wb.create_sheet(sheet)
        ws.append(SETTINGS_COLUMNS)
    _fill_settings_rows(ws)
    wb.save(filepath)
    print(f"Settings reset to defaults: {filepath}")


# ── Data Loading ─────────────────────────────────────────────────────────────

def normalize_columns(df, expected):
    """Strip header whitespace and rename case-insensitive matches to the expected
    names. Returns the set of expected columns still missing."""
    df.columns = [str(c).strip() for c in df.columns]
    lookup = {name.lower(): name for name in expected}
    df.rename(columns={c: lookup[c.lower()] for c in df.columns if c.lower() in lookup},
              inplace=True)
    return set(expected) - set(df.columns)


def _read_sheet(filepath, key, required, optional=()):
    """Read a sheet into a DataFrame, or None (with a warning) if unusable.
    Missing optional columns are added as blanks."""
    sheet = SHEET_NAMES[key]
    try:
        df = pd.read_excel(filepath, sheet_name=sheet)
    except Exception as e:
        print(f"  WARNING: Could not read {sheet} sheet: {e}")
        return None
    if df.empty:
        return None
    missing = normalize_columns(df, set(required) | set(optional))
    if missing & set(required):
        print(f"  ERROR: {sheet} sheet is missing column(s): "
              f"{', '.join(sorted(missing & set(required)))}. Found: {', '.join(df.columns)}")
        return None
    for column in missing:
        df[column] = None
    return df


def _parse_whole_number(val, default):
    """Floor a numeric cell; blank, non-numeric or infinite cells give the default."""
    if val is None or clean_str(val) == "":
        return default
    try:
        return math.floor(float(val))
    except (ValueError, TypeError, OverflowError):
        return default


def load_templates(filepath):
    """Load child-ticket templates from the 'Templates' sheet, in sheet order."""
    df = _read_sheet(filepath, "templates", {"Name"},
                     optional={"Description", "Start Offset", "Duration"})
    if df is None:
        return []
    templates = []
    for idx, row in df.iterrows():
        name = clean_str(row["Name"])
        if not name:
            continue  # skip blank rows
        template = {
            "name": name,
            "description": clean_str(row["Description"]),
            "start_offset": _parse_whole_number(row["Start Offset"], 0),
            "duration": _parse_whole_number(row["Duration"], 1),
        }
        validate_template(template)
        templates.append(template)
    return templates


def load_assignees(filepath):
    """Load the roster from the 'Assignees' sheet. Returns {name: email}."""
    df = _read_sheet(filepath, "assignees", {"Name"}, optional={"Email"})
    if df is None:
        return {}
    roster = {}
    for _, row in df.iterrows():
        name = clean_str(row["Name"])
        if not name:
            continue
        roster[name] = clean_str(row.get("Email", ""))
    return roster


def load_settings(filepath):
    """Load Gantt colors from the 'Settings' sheet over the defaults."""
    df = _read_sheet(filepath, "settings", set(SETTINGS_COLUMNS))
    if df is None:
        return dict(DEFAULT_SETTINGS)
    by_name = {}
    for key, label in SETTING_LABELS.items():
        by_name[label.lower()] = key
        by_name[key] = key
    values = {}
    for idx, row in df.iterrows():
        name = clean_str(row["Setting"])
        if not name:
            continue
        key = by_name.get(name.lower())
        if key is None:
            print(f"  WARNING: Settings row {idx + 2}: unknown setting '{name}', skipping.")
            continue
        value = clean_str(row["Value"])
        if not value:
            continue
        if not is_valid_color(value):
            print(f"  WARNING: Settings row {idx + 2}: '{name}' color '{value}' is not a "
                  f"valid hex code (e.g. #2196F3). Using default {DEFAULT_SETTINGS[key]}.")
            continue
        values[key] = value.upper()
    return merge_settings(values)


def load_holidays(filepath):
    """Load holidays from the 'Holidays' sheet. Returns set[datetime] (empty if missing)."""
    df = _read_sheet(filepath, "holidays", {"Date"})
    if df is None:
        return set()
    holidays = set()
    for idx, row in df.iterrows():
        if clean_str(row["Date"]) == "":
            continue
        try:
            holidays.add(parse_date(row["Date"], context=f"Holidays row {idx + 2}, 'Date'"))
        except ValueError as e:
            print(f"  WARNING: Could not parse holiday row {idx + 2}: {e}")
    return holidays


def _parse_kind(label):
    wanted = clean_str(label).lower()
    for kind, text in KIND_LABELS.items():
        if wanted in (kind, text.lower()):
            return kind
    return None


def load_ticket_store(filepath, schema=DEFAULT_SCHEMA):
    """Load tickets from the 'Tickets' sheet into a TicketStore."""
    required = {"ID", "Type", "Name", "Assignee", "Status", "Start Date", "End Date"}
    df = _read_sheet(filepath, "tickets", required, optional=set(TICKET_COLUMNS) - required)
    if df is None:
        return TicketStore()
    tickets = []
    for idx, row in df.iterrows():
        row_num = idx + 2
        ticket_id = clean_str(row["ID"])
        if not ticket_id:
            continue  # skip blank rows
        try:
            parent_id = clean_str(row["Parent ID"]) or None
            kind = _parse_kind(row["Type"])
            if kind is None:
                kind = KIND_CHILD if parent_id else KIND_PARENT
                print(f"  WARNING: Tickets row {row_num}: type '{clean_str(row['Type'])}' "
                      f"not recognised, treating as {KIND_LABELS[kind]}.")

            status = status_from_label(row["Status"], schema)
            if status is None:
                status = STATUS_NOT_STARTED
                print(f"  WARNING: Tickets row {row_num}: status '{clean_str(row['Status'])}' "
                      f"not recognised. Valid: {', '.join(status_labels(schema))}")

            start = parse_date(row["Start Date"], context=f"Tickets row {row_num}, 'Start Date'")
            end = parse_date(row["End Date"], context=f"Tickets row {row_num}, 'End Date'")
            if end < start:
                print(f"  WARNING: Tickets row {row_num}: end date is before start date, skipping.")
                continue

            created_at = None
            if clean_str(row["Created At"]):
                stamp = pd.to_datetime(row["Created At"], errors="coerce")
                created_at = None if pd.isna(stamp) else stamp.to_pydatetime()

            tickets.append(make_ticket(
                ticket_id, parent_id, kind, clean_str(row["Name"]),
                clean_str(row["Description"]), clean_str(row["Assignee"]), status,
                start, end, created_at,
            ))
        except (ValueError, TypeError) as e:
            print(f"  WARNING: Could not parse Tickets row {row_num}: {e}")
    return TicketStore(tickets)


def _ticket_to_row(ticket, schema):
    return [
        ticket["id"],
        ticket["parent_id"] or "",
        KIND_LABELS[ticket["kind"]],
        ticket["name"],
        ticket["description"],
        ticket["assignee"],
        status_label(ticket["status"], schema),
        ticket["start_date"],
        ticket["end_date"],
        ticket["created_at"],
    ]


def save_ticket_rows(filepath, tickets, schema=DEFAULT_SCHEMA):
    """Append tickets to the 'Tickets' sheet, creating the sheet if needed."""
    wb = load_workbook(filepath)
    sheet = SHEET_NAMES["tickets"]
    if sheet in wb.sheetnames:
        ws = wb[sheet]
    else:
        ws = wb.create_sheet(sheet, 0)
        ws.append(TICKET_COLUMNS)
    for ticket in tickets:
        ws.append(_ticket_to_row(ticket, schema))
    wb.save(filepath)


# ── Gantt Sheet ──────────────────────────────────────────────────────────────

def gantt_sheet_name(now):
    """'Gantt_YYYYMMDD_HHMMSS' for the generation time."""
    return f"{GANTT_SHEET_PREFIX}{now.strftime('%Y%m%d_%H%M%S')}"


def _solid_fill(color):
    hex_color = (color or WHITE).lstrip("#").upper()
    return PatternFill(start_color=hex_color, end_color=hex_color, fill_type="solid")


def write_gantt_sheet(filepath, layout, sheet_name=None):
    """Write a layout to a new sheet: values, then one fill per cell from the
    layout's color matrices. Returns the sheet name used."""
    if sheet_name is None:
        sheet_name = gantt_sheet_name(datetime.now())
    wb = load_workbook(filepath)
    name = sheet_name
    suffix = 2
    while name in wb.sheetnames:
        name = f"{sheet_name}_{suffix}"
        suffix += 1
    ws = wb.create_sheet(name)

    ws.append(layout["headers"])
    for col_idx, color in enumerate(layout["header_backgrounds"], start=1):
        cell = ws.cell(row=1, column=col_idx)
        cell.fill = _solid_fill(color)
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal="center")

    for row, colors in zip(layout["rows"], layout["backgrounds"]):
        ws.append(row_values(row, layout["detail_column"]))
        row_idx = ws.max_row
        for col_idx, color in enumerate(colors, start=1):
            ws.cell(row=row_idx, column=col_idx).fill = _solid_fill(color)

    wb.save(filepath)
    return name


def print_layout_summary(layout):
    """Console summary of a built layout."""
    parents = sum(1 for r in layout["rows"] if r["role"] == KIND_PARENT)
    children = len(layout["rows"]) - parents
    print(f"  Parents: {parents}")
    print(f"  Children: {children}")
    if layout["date_range"]:
        dr = layout["date_range"]
        print(f"  Display window: {dr[0].strftime('%d %b %Y')} - {dr[-1].strftime('%d %b %Y')} "
              f"({len(dr)} day{'s' if len(dr) != 1 else ''})")


# ── Main ─────────────────────────────────────────────────────────────────────

def _parse_cli_date(value, flag):
    try:
        return parse_date(value, context=flag)
    except ValueError as e:
        print(f"  ERROR: {e}")
        sys.exit(1)


def run_create(args):
    """--create: expand the templates into a parent and children and save them."""
    print(f"Loading data from: {args.input}")
    templates = load_templates(args.input)
    roster = load_assignees(args.input)
    store = load_ticket_store(args.input, args.schema)
    print(f"  Templates: {len(templates)}")
    print(f"  Assignees: {', '.join(roster) or '(none)'}")
    print(f"  Existing tickets: {len(store)}")

    if not roster:
        print("  ERROR: Assignees sheet is empty. Add at least one assignee.")
        sys.exit(1)

    parent_spec = {
        "name": args.create,
        "description": args.description or "",
        "assignee": args.assignee or "",
        "start_date": _parse_cli_date(args.start, "--start") if args.start else None,
        "end_date": _parse_cli_date(args.end, "--end") if args.end else None,
    }
    if parent_spec["start_date"] is None:
        print("  ERROR: --start is required with --create.")
        sys.exit(1)

    result = expand_template(parent_spec, templates, roster, store.ids(),
                             parent_end_policy=args.parent_end)
    tickets = [result["parent"]] + result["children"]
    save_tickets(store, roster, tickets)
    save_ticket_rows(args.input, tickets, args.schema)

    print()
    print(f"  Created {len(tickets)} ticket{'s' if len(tickets) != 1 else ''}:")
    for t in tickets:
        indent = "    " if t["kind"] == KIND_PARENT else "      "
        print(f"{indent}{t['id']}  {t['name']}  "
              f"{t['start_date'].strftime('%Y-%m-%d')} -> {t['end_date'].strftime('%Y-%m-%d')}")


def run_gantt(args):
    """--gantt: build the layout for the period and write it to a new sheet."""
    if not args.date_from or not args.date_to:
        print("  ERROR: --gantt needs both --from and --to (YYYY-MM-DD).")
        sys.exit(1)
    date_from = _parse_cli_date(args.date_from, "--from")
    date_to = _parse_cli_date(args.date_to, "--to")
    today = _parse_cli_date(args.today, "--today") if args.today else norm_date(datetime.now())

    print(f"Loading data from: {args.input}")
    store = load_ticket_store(args.input, args.schema)
    settings = load_settings(args.input)
    holidays = load_holidays(args.input)
    print(f"  Tickets: {len(store)}")
    if holidays:
        print(f"  Holidays: {len(holidays)}")

    detail = None if args.detail == "none" else args.detail
    layout = build_gantt_layout(date_from, date_to, store, settings, holiday_lookup(holidays),
                                today, schema=args.schema, detail_column=detail,
                                highlight=args.highlight)
    if not layout["rows"]:
        print(f"  WARNING: 0 parent tickets overlap {date_from.strftime('%d %b %Y')} - "
              f"{date_to.strftime('%d %b %Y')}. No Gantt sheet written.")
        return
    print_layout_summary(layout)

    sheet = write_gantt_sheet(args.input, layout)
    print()
    print(f"  Output: sheet '{sheet}' in {os.path.abspath(args.input)}")


def main():
    parser = argparse.ArgumentParser(
        description="Ticket Planner: create parent/child tickets from templates "
                    "and generate Gantt sheets in an Excel workbook"
    )
    parser.add_argument(
        "--template", action="store_true",
        help="Generate a starter Excel workbook with example templates and settings "
         "(an existing workbook only gets its missing sheets)"
    )
    parser.add_argument(
        "--input", default=DEFAULT_INPUT,
        help="Path to the Excel workbook (default: tickets.xlsx)"
    )
    parser.add_argument(
        "--create", metavar="NAME", default=None,
        help="Create a parent ticket with this name plus one child per template"
    )
    parser.add_argument("--description", default="", help="Parent ticket description (with --create)")
    parser.add_argument("--assignee", default=None, help="Assignee for the new tickets (with --create)")
    parser.add_argument("--start", default=None, help="Parent start date YYYY-MM-DD (with --create)")
    parser.add_argument(
        "--end", default=None,
        help="Parent end date YYYY-MM-DD (with --create, required unless --parent-end derived)"
    )
    parser.add_argument(
        "--parent-end", default="input", choices=PARENT_END_POLICIES,
        help="Parent end date: as entered with --end, or derived from the latest child"
    )
    parser.add_argument("--gantt", action="store_true", help="Write a Gantt sheet for --from/--to")
    parser.add_argument(
        "--from", dest="date_from", default=None,
        help="Only include parent tickets overlapping this start date (YYYY-MM-DD)"
    )
    parser.add_argument(
        "--to", dest="date_to", default=None,
        help="Only include parent tickets overlapping this end date (YYYY-MM-DD)"
    )
    parser.add_argument(
        "--schema", default=DEFAULT_SCHEMA, choices=sorted(STATUS_SCHEMAS),
        help="Status schema: v1 (3 states) or v2 (4 states, default)"
    )
    parser.add_argument(
        "--highlight", default="overdue", choices=HIGHLIGHT_POLICIES,
        help="Highlight overdue end dates (default) or today's column"
    )
    parser.add_argument(
        "--detail", default="none", choices=["none", "description", "memo"],
        help="Extra Gantt column: ticket description, '//' memo line, or none"
    )
    parser.add_argument("--today", default=None, help="Pin 'today' (YYYY-MM-DD) for overdue coloring")
    parser.add_argument(
        "--reset-settings", action="store_true",
        help="Rewrite the Settings sheet with the default Gantt colors"
    )
    args = parser.parse_args()

    if args.template:
        generate_template(args.input, args.schema)
        return

    if not os.path.exists(args.input):
        print(f"Error: Input file not found: {args.input}")
        print("Run with --template first to create a template.")
        sys.exit(1)

    if not args.create and not args.gantt and not args.reset_settings:
        parser.error("nothing to do: use --template, --reset-settings, --create NAME or --gantt")

    if args.reset_settings:
        reset_settings(args.input)

    try:
        if args.create:
            run_create(args)
        if args.gantt:
            run_gantt(args)
    except PlannerError as e:
        print(f"  ERROR: {e}")
        sys.exit(1)
    print("\nDone.")


if __name__ == "__main__":
    main()
