"""JSON and GEDCOM import/export, plus backup and restore."""

import json
import logging
import os
import re
import tempfile
from collections import defaultdict
from dataclasses import fields
from datetime import datetime
from typing import Any

from gedcom.element.family import FamilyElement
from gedcom.element.individual import IndividualElement
from gedcom.parser import Parser
from pydantic.alias_generators import to_camel

from errors import FamilyTreeError, ValidationFailure
from family_db import FamilyStore
from models import Citation, Event, Individual, Marriage, Media, MediaLink, ParentChildEdge, Source

logger = logging.getLogger("familytree.import_export")

EXPORT_VERSION = "1.0"

MONTHS = ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"]

MONTH_MAP = {name: index for index, name in enumerate(MONTHS, start=1)}
MONTH_MAP.update({
    "JANUARY": 1, "FEBRUARY": 2, "MARCH": 3, "APRIL": 4, "JUNE": 6, "JULY": 7,
    "AUGUST": 8, "SEPT": 9, "SEPTEMBER": 9, "OCTOBER": 10, "NOVEMBER": 11, "DECEMBER": 12,
})

DATE_QUALIFIERS = re.compile(r"^(ABT|ABOUT|BEF|AFT|EST|CAL|CIRCA|CA)\.?\s+", re.IGNORECASE)

GEDCOM_SEX = {"male": "M", "female": "F"}
GENDER_FROM_SEX = {"M": "male", "F": "female"}


# ============================================================================
# Dates
# ============================================================================

def format_gedcom_date(iso_date: str | None) -> str | None:
    """'1850-03-15' -> '15 MAR 1850'."""
    if not iso_date:
        return None
    try:
        parsed = datetime.strptime(iso_date[:10], "%Y-%m-%d")
    except ValueError:
        return iso_date
    return f"{parsed.day:02d} {MONTHS[parsed.month - 1]} {parsed.year}"


def parse_gedcom_date(value: str | None) -> str | None:
    """
    Convert a GEDCOM date into ISO format (YYYY-MM-DD).

    Handles "15 MAR 1850", "MAR 1850" and "1850", with qualifiers such as
    ABT or BEF stripped. A missing day or month becomes 01. Returns None for
    anything else.
    """
    if not value:
        return None
    text = DATE_QUALIFIERS.sub("", value.strip()).upper()

    match = re.fullmatch(r"(\d{1,2})\s+([A-Z]+)\.?\s+(\d{4})", text)
    if match and match.group(2) in MONTH_MAP:
        day, month, year = int(match.group(1)), MONTH_MAP[match.group(2)], int(match.group(3))
        try:
            return datetime(year, month, day).strftime("%Y-%m-%d")
        except ValueError:
            return None

    match = re.fullmatch(r"([A-Z]+)\.?\s+(\d{4})", text)
    if match and match.group(1) in MONTH_MAP:
        return f"{int(match.group(2)):04d}-{MONTH_MAP[match.group(1)]:02d}-01"

    match = re.fullmatch(r"(\d{4})", text)
    if match:
        return f"{int(match.group(1)):04d}-01-01"

    return None


# ============================================================================
# JSON
# ============================================================================

def export_json_data(store: FamilyStore) -> dict[str, Any]:
    """Snapshot every table as camelCase records."""
    return {
        "version": EXPORT_VERSION,
        "exportDate": datetime.now().isoformat(),
        "data": {
            "individuals": [r.to_dict() for r in store.list_individuals()],
            "marriages": [r.to_dict() for r in store.list_marriages()],
            "relationships": [r.to_dict() for r in store.list_edges()],
            "events": [r.to_dict() for r in store.list_events()],
            "sources": [r.to_dict() for r in store.list_sources()],
            "media": [r.to_dict() for r in store.list_media()],
            "mediaLinks": [r.to_dict() for r in store.list_media_links()],
            "sourceCitations": [r.to_dict() for r in store.list_citations()],
        },
    }


def export_json(store: FamilyStore) -> str:
    return json.dumps(export_json_data(store), indent=2)


def _snake(model, record: dict[str, Any]) -> dict[str, Any]:
    """camelCase export keys back to column names; unknown keys are dropped."""
    names = {to_camel(f.name): f.name for f in fields(model)}
    return {names[key]: value for key, value in record.items() if key in names}


EXPORT_SECTIONS = [
    "individuals", "marriages", "relationships", "events",
    "sources", "media", "mediaLinks", "sourceCitations",
]


def _check_export(payload: Any, strict: bool = False) -> dict[str, Any]:
    """
    Structural checks on an export, returning its ``data`` mapping.

    Every section present must be a list. With ``strict`` every record must
    also be an object; otherwise such records are reported during import.
    """
    if not isinstance(payload, dict) or "data" not in payload or "version" not in payload:
        raise ValidationFailure(["Invalid JSON format: missing data or version"])
    data = payload["data"]
    if not isinstance(data, dict):
        raise ValidationFailure(["Invalid JSON format: data must be an object"])

    problems = []
    for section in EXPORT_SECTIONS:
        records = data.get(section, [])
        if not isinstance(records, list):
            problems.append(f"{section}: expected a list, got {type(records).__name__}")
        elif strict:
            bad = sum(1 for record in records if not isinstance(record, dict))
            if bad:
                problems.append(f"{section}: {bad} record(s) are not objects")
    if problems:
        raise ValidationFailure(problems)
    return data


def _records(data: dict[str, Any], section: str, errors: list[str]):
    """Yield the object records of a section; anything else goes to ``errors``."""
    for position, record in enumerate(data.get(section, [])):
        if isinstance(record, dict):
            yield record
        else:
            errors.append(f"{section}[{position}]: expected an object, got {type(record).__name__}")


def _remap(values: dict[str, Any], key: str, id_map: dict[int, int], required: bool = True) -> bool:
    """Swap an exported id for the newly assigned one. False if it cannot be resolved."""
    old_id = values.get(key)
    if old_id is None:
        return not required
    if not isinstance(old_id, int) or old_id not in id_map:
        return False
    values[key] = id_map[old_id]
    return True


def import_json_data(store: FamilyStore, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Import an export produced by ``export_json_data``.

    Records receive new ids; references between records are rewritten to
    match. Records that fail or point at ids missing from the file are
    reported in ``errors`` and skipped.
    """
    data = _check_export(payload)
    errors: list[str] = []
    counts = defaultdict(int)
    individual_ids: dict[int, int] = {}
    source_ids: dict[int, int] = {}
    media_ids: dict[int, int] = {}

    def attempt(label: str, action) -> Any:
        try:
            return action()
        except FamilyTreeError as exc:
            errors.append(f"{label}: {exc}")
            return None

    for record in _records(data, "individuals", errors):
        values = _snake(Individual, record)
        old_id = values.pop("id", None)
        label = f"Individual {values.get('first_name')} {values.get('last_name')}"
        individual = attempt(label, lambda: store.add_individual(values))
        if individual is not None:
            if isinstance(old_id, int):
                individual_ids[old_id] = individual.id
            counts["individuals"] += 1

    for record in _records(data, "marriages", errors):
        values = _snake(Marriage, record)
        label = f"Marriage {values.pop('id', None)}"
        if not (_remap(values, "spouse1_id", individual_ids) and _remap(values, "spouse2_id", individual_ids)):
            errors.append(f"{label}: references an unknown individual")
            continue
        if attempt(label, lambda: store.add_marriage(values)) is not None:
            counts["marriages"] += 1

    for record in _records(data, "relationships", errors):
        values = _snake(ParentChildEdge, record)
        label = f"Relationship {values.pop('id', None)}"
        if not (_remap(values, "parent_id", individual_ids) and _remap(values, "child_id", individual_ids)):
            errors.append(f"{label}: references an unknown individual")
            continue
        if attempt(label, lambda: store.add_edge(values)) is not None:
            counts["relations"] += 1

    for record in _records(data, "events", errors):
        values = _snake(Event, record)
        label = f"Event {values.pop('id', None)}"
        if not _remap(values, "individual_id", individual_ids):
            errors.append(f"{label}: references an unknown individual")
            continue
        if attempt(label, lambda: store.add_event(values)) is not None:
            counts["events"] += 1

    for record in _records(data, "sources", errors):
        values = _snake(Source, record)
        old_id = values.pop("id", None)
        source = attempt(f"Source {old_id}", lambda: store.add_source(values))
        if source is not None:
            if isinstance(old_id, int):
                source_ids[old_id] = source.id
            counts["sources"] += 1

    for record in _records(data, "media", errors):
        values = _snake(Media, record)
        old_id = values.pop("id", None)
        if not _remap(values, "individual_id", individual_ids, required=False):
            errors.append(f"Media {old_id}: references an unknown individual")
            continue
        media = attempt(f"Media {old_id}", lambda: store.add_media(values))
        if media is not None:
            if isinstance(old_id, int):
                media_ids[old_id] = media.id
            counts["media"] += 1

    for record in _records(data, "sourceCitations", errors):
        values = _snake(Citation, record)
        if not (_remap(values, "individual_id", individual_ids) and _remap(values, "source_id", source_ids)):
            errors.append(f"Citation {record}: references an unknown record")
            continue
        attempt("Citation", lambda: store.add_citation(values))

    for record in _records(data, "mediaLinks", errors):
        values = _snake(MediaLink, record)
        if not (_remap(values, "individual_id", individual_ids) and _remap(values, "media_id", media_ids)):
            errors.append(f"Media link {record}: references an unknown record")
            continue
        attempt("Media link", lambda: store.add_media_link(values))

    logger.info(f"JSON import finished: {dict(counts)}, {len(errors)} error(s)")
    return _import_result(errors, counts)


def import_json(store: FamilyStore, text: str) -> dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationFailure([f"Invalid JSON: {exc}"]) from exc
    return import_json_data(store, payload)


def _import_result(errors: list[str], counts: dict[str, int]) -> dict[str, Any]:
    return {
        "success": not errors,
        "errors": errors,
        "imported": {
            "individuals": counts.get("individuals", 0),
            "marriages": counts.get("marriages", 0),
            "relations": counts.get("relations", 0),
            "events": counts.get("events", 0),
            "sources": counts.get("sources", 0),
            "media": counts.get("media", 0),
        },
    }


# ============================================================================
# GEDCOM export
# ============================================================================

def _note_lines(level: int, text: str) -> list[str]:
    first, *rest = text.splitlines() or [""]
    return [f"{level} NOTE {first}"] + [f"{level + 1} CONT {line}" for line in rest]


def _event_lines(tag: str, date: str | None, place: str | None) -> list[str]:
    if not date and not place:
        return []
    lines = [f"1 {tag}"]
    if date:
        lines.append(f"2 DATE {format_gedcom_date(date)}")
    if place:
        lines.append(f"2 PLAC {place}")
    return lines


def _collect_families(store: FamilyStore) -> list[dict[str, Any]]:
    """
    Group edges into GEDCOM families.

    Each marriage becomes a family holding the children both spouses have an
    edge to. Edges left over form one single-parent family per parent.
    """
    individuals = {i.id: i for i in store.list_individuals()}
    edges = store.list_edges()
    marriages = store.list_marriages()

    parents_of: dict[int, set[int]] = defaultdict(set)
    child_order: list[int] = []
    for edge in edges:
        if edge.child_id not in parents_of:
            child_order.append(edge.child_id)
        parents_of[edge.child_id].add(edge.parent_id)

    families = []
    covered: set[tuple[int, int]] = set()
    for marriage in marriages:
        spouses = (marriage.spouse1_id, marriage.spouse2_id)
        children = [c for c in child_order if set(spouses) <= parents_of[c]]
        covered.update((s, c) for s in spouses for c in children)
        families.append({
            "pointer": f"@F{marriage.id}@",
            "husb": marriage.spouse1_id,
            "wife": marriage.spouse2_id,
            "children": children,
            "marriage": marriage,
        })

    next_id = max((m.id for m in marriages), default=0) + 1
    single_parent: dict[int, list[int]] = {}
    for edge in edges:
        if (edge.parent_id, edge.child_id) in covered:
            continue
        children = single_parent.setdefault(edge.parent_id, [])
        if edge.child_id not in children:
            children.append(edge.child_id)
    for parent_id, children in single_parent.items():
        parent = individuals.get(parent_id)
        role = "wife" if parent is not None and parent.gender == "female" else "husb"
        families.append({
            "pointer": f"@F{next_id}@",
            "husb": parent_id if role == "husb" else None,
            "wife": parent_id if role == "wife" else None,
            "children": children,
            "marriage": None,
        })
        next_id += 1

    return families


def export_gedcom(store: FamilyStore) -> str:
    """Export the database as GEDCOM 5.5.1 text."""
    families = _collect_families(store)
    fams: dict[int, list[str]] = defaultdict(list)
    famc: dict[int, list[str]] = defaultdict(list)
    for family in families:
        for spouse in (family["husb"], family["wife"]):
            if spouse is not None:
                fams[spouse].append(family["pointer"])
        for child in family["children"]:
            famc[child].append(family["pointer"])

    lines = [
        "0 HEAD",
        "1 GEDC",
        "2 VERS 5.5.1",
        "2 FORM LINEAGE-LINKED",
        "1 CHAR UTF-8",
        "1 SOUR FamilyTreeKeeper",
    ]

    individuals = store.list_individuals()
    for individual in individuals:
        given = " ".join(p for p in (individual.first_name, individual.middle_name) if p)
        lines.append(f"0 @I{individual.id}@ INDI")
        lines.append(f"1 NAME {given} /{individual.last_name}/")
        if individual.middle_name:
            lines.append(f"2 GIVN {given}")
        lines.append(f"1 SEX {GEDCOM_SEX.get(individual.gender or '', 'U')}")
        lines.extend(_event_lines("BIRT", individual.birth_date, individual.birth_place))
        if individual.death_date or individual.death_place:
            lines.extend(_event_lines("DEAT", individual.death_date, individual.death_place))
        elif not individual.is_living:
            lines.append("1 DEAT Y")
        if individual.notes:
            lines.extend(_note_lines(1, individual.notes))
        lines.extend(f"1 FAMS {pointer}" for pointer in fams.get(individual.id, []))
        lines.extend(f"1 FAMC {pointer}" for pointer in famc.get(individual.id, []))

    for family in families:
        lines.append(f"0 {family['pointer']} FAM")
        if family["husb"] is not None:
            lines.append(f"1 HUSB @I{family['husb']}@")
        if family["wife"] is not None:
            lines.append(f"1 WIFE @I{family['wife']}@")
        lines.extend(f"1 CHIL @I{child}@" for child in family["children"])
        marriage = family["marriage"]
        if marriage is not None:
            lines.extend(_event_lines("MARR", marriage.marriage_date, marriage.marriage_place))
            lines.extend(_event_lines("DIV", marriage.divorce_date, marriage.divorce_place))
            if marriage.notes:
                lines.extend(_note_lines(1, marriage.notes))

    lines.append("0 TRLR")
    logger.info(f"Exported GEDCOM with {len(individuals)} individuals and {len(families)} families")
    return "\n".join(lines) + "\n"


# ============================================================================
# GEDCOM import
# ============================================================================

def parse_gedcom_content(content: str) -> Parser:
    """Parse GEDCOM content from a string."""
    # Write content to temp file (python-gedcom requires file path)
    with tempfile.NamedTemporaryFile(mode='w', suffix='.ged', delete=False, encoding='utf-8') as f:
        f.write(content)
        temp_path = f.name

    try:
        parser = Parser()
        parser.parse_file(temp_path, strict=False)
        return parser
    finally:
        os.unlink(temp_path)


def _sub_event(element, tag: str) -> tuple[str | None, str | None]:
    """Date and place of the first ``tag`` event under a family element."""
    for child in element.get_child_elements():
        if child.get_tag() != tag:
            continue
        date = place = None
        for detail in child.get_child_elements():
            if detail.get_tag() == "DATE":
                date = parse_gedcom_date(detail.get_value())
            elif detail.get_tag() == "PLAC":
                place = detail.get_value() or None
        return date, place
    return None, None


def _notes(element) -> str | None:
    notes = []
    for child in element.get_child_elements():
        if child.get_tag() != "NOTE":
            continue
        text = child.get_value() or ""
        for part in child.get_child_elements():
            if part.get_tag() == "CONT":
                text += "\n" + (part.get_value() or "")
            elif part.get_tag() == "CONC":
                text += part.get_value() or ""
        if text:
            notes.append(text)
    return "\n".join(notes) if notes else None


def _date_and_place(data) -> tuple[str | None, str | None]:
    """First two items of python-gedcom's (date, place, sources) tuple."""
    if not data:
        return None, None
    date = data[0] if len(data) > 0 else None
    place = data[1] if len(data) > 1 else None
    return date or None, place or None


def _has_death(element) -> bool:
    return any(child.get_tag() == "DEAT" for child in element.get_child_elements())


def _individual_values(element: IndividualElement) -> dict[str, Any] | None:
    given, surname = element.get_name()
    given, surname = (given or "").strip(), (surname or "").strip()
    if not given or not surname:
        return None
    first_name, _, middle_name = given.partition(" ")
    birth_date, birth_place = _date_and_place(element.get_birth_data())
    death_date, death_place = _date_and_place(element.get_death_data())
    return {
        "first_name": first_name,
        "middle_name": middle_name.strip() or None,
        "last_name": surname,
        "gender": GENDER_FROM_SEX.get(element.get_gender(), "unknown"),
        "birth_date": parse_gedcom_date(birth_date),
        "birth_place": birth_place or None,
        "death_date": parse_gedcom_date(death_date),
        "death_place": death_place or None,
        "is_living": not _has_death(element),
        "notes": _notes(element),
    }


def import_gedcom(store: FamilyStore, content: str) -> dict[str, Any]:
    """
    Import individuals, marriages and parent-child edges from GEDCOM text.

    Individuals without both a given name and a surname are skipped. A family
    with two spouses yields a marriage; every (spouse, child) pair yields a
    biological edge.
    """
    parser = parse_gedcom_content(content)
    errors: list[str] = []
    counts = defaultdict(int)
    id_map: dict[str, int] = {}

    elements = parser.get_root_child_elements()
    for element in elements:
        if not isinstance(element, IndividualElement):
            continue
        pointer = element.get_pointer()
        values = _individual_values(element)
        if values is None:
            errors.append(f"Individual {pointer}: missing first or last name")
            continue
        try:
            id_map[pointer] = store.add_individual(values).id
            counts["individuals"] += 1
        except FamilyTreeError as exc:
            errors.append(f"Individual {pointer}: {exc}")

    for element in elements:
        if not isinstance(element, FamilyElement):
            continue
        pointer = element.get_pointer()

        def member_ids(role: str) -> list[int]:
            members = parser.get_family_members(element, role)
            return [id_map[m.get_pointer()] for m in members if m.get_pointer() in id_map]

        spouses = member_ids("HUSB")[:1] + member_ids("WIFE")[:1]
        try:
            if len(spouses) == 2:
                marriage_date, marriage_place = _sub_event(element, "MARR")
                divorce_date, divorce_place = _sub_event(element, "DIV")
                store.add_marriage({
                    "spouse1_id": spouses[0],
                    "spouse2_id": spouses[1],
                    "marriage_date": marriage_date,
                    "marriage_place": marriage_place,
                    "divorce_date": divorce_date,
                    "divorce_place": divorce_place,
                    "is_active": divorce_date is None,
                    "notes": _notes(element),
                })
                counts["marriages"] += 1

            for child in parser.get_family_members(element, "CHIL"):
                child_id = id_map.get(child.get_pointer())
                if child_id is None:
                    errors.append(f"Family {pointer}: child {child.get_pointer()} was not imported")
                    continue
                for parent_id in spouses:
                    store.add_edge({
                        "parent_id": parent_id,
                        "child_id": child_id,
                        "relationship_type": "biological",
                        "is_primary": True,
                    })
                    counts["relations"] += 1
        except FamilyTreeError as exc:
            errors.append(f"Family {pointer}: {exc}")

    logger.info(f"GEDCOM import finished: {dict(counts)}, {len(errors)} error(s)")
    return _import_result(errors, counts)


# ============================================================================
# Backup & Restore
# ============================================================================

def create_backup(store: FamilyStore) -> dict[str, Any]:
    return {
        "backupDate": datetime.now().strftime("%Y-%m-%dT%H-%M-%S"),
        "version": EXPORT_VERSION,
        "data": export_json_data(store),
    }


def restore_backup(store: FamilyStore, backup: dict[str, Any]) -> dict[str, Any]:
    """Replace all stored data with the contents of a backup."""
    if not isinstance(backup, dict) or "data" not in backup or "backupDate" not in backup:
        raise ValidationFailure(["Invalid backup format"])
    # Validate the wrapped export before wiping anything
    inner = backup["data"]
    _check_export(inner, strict=True)
    logger.info(f"Restoring backup taken {backup['backupDate']}")
    store.clear_all()
    result = import_json_data(store, inner)
    return {"success": result["success"], "errors": result["errors"]}
