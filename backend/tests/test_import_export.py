"""Tests for JSON and GEDCOM import/export and backups."""

import json
import os
import pytest
import sys

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import ValidationFailure
from family_db import FamilyStore
from import_export import (
    create_backup,
    export_gedcom,
    export_json,
    export_json_data,
    format_gedcom_date,
    import_gedcom,
    import_json,
    import_json_data,
    parse_gedcom_content,
    parse_gedcom_date,
    restore_backup,
)


SAMPLE_GEDCOM = """0 HEAD
1 GEDC
2 VERS 5.5.1
0 @I1@ INDI
1 NAME John /Smith/
1 SEX M
1 BIRT
2 DATE 15 MAR 1850
2 PLAC Boston, Massachusetts
1 DEAT
2 DATE ABT 1920
1 FAMS @F1@
0 @I2@ INDI
1 NAME Mary Ann /Jones/
1 SEX F
1 BIRT
2 DATE 1855
1 NOTE Kept the family bible
2 CONT Second line
1 FAMS @F1@
0 @I3@ INDI
1 NAME William /Smith/
1 SEX M
1 BIRT
2 DATE JUN 1880
1 FAMC @F1@
0 @I4@ INDI
1 NAME /Nobody/
0 @F1@ FAM
1 HUSB @I1@
1 WIFE @I2@
1 CHIL @I3@
1 MARR
2 DATE 10 JUN 1878
2 PLAC Salem
0 TRLR"""


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store(tmp_path):
    with FamilyStore(str(tmp_path / "source.db")) as s:
        yield s


@pytest.fixture
def other_store(tmp_path):
    with FamilyStore(str(tmp_path / "target.db")) as s:
        yield s


def person(store, first, last="Smith", **extra):
    return store.add_individual({"first_name": first, "last_name": last, **extra})


@pytest.fixture
def family(store):
    """Married parents with two shared children, and a son from another partner."""
    dad = person(store, "Tom", gender="male", birth_date="1920-05-01")
    mum = person(store, "Eve", "Brown", gender="female", middle_name="Rose")
    kid1 = person(store, "Ann")
    kid2 = person(store, "Bill")
    half = person(store, "Carl", is_living=False)
    store.add_marriage({"spouse1_id": dad.id, "spouse2_id": mum.id, "marriage_date": "1945-06-02"})
    for kid in (kid1, kid2):
        store.add_edge({"parent_id": dad.id, "child_id": kid.id})
        store.add_edge({"parent_id": mum.id, "child_id": kid.id})
    store.add_edge({"parent_id": dad.id, "child_id": half.id})
    store.add_event({"individual_id": kid1.id, "event_type": "graduation", "event_date": "1970-06-01"})
    source = store.add_source({"title": "Census 1950"})
    store.add_citation({"individual_id": dad.id, "source_id": source.id})
    media = store.add_media({"title": "Wedding", "file_url": "/w.jpg", "file_type": "image", "individual_id": mum.id})
    store.add_media_link({"individual_id": dad.id, "media_id": media.id})
    return dad, mum, kid1, kid2, half


# ============================================================================
# Date Tests
# ============================================================================

class TestGedcomDates:
    """Tests for GEDCOM date conversion."""

    @pytest.mark.parametrize("value,expected", [
        ("15 MAR 1850", "1850-03-15"),
        ("3 jan 1901", "1901-01-03"),
        ("MAR 1850", "1850-03-01"),
        ("1850", "1850-01-01"),
        ("ABT 1850", "1850-01-01"),
        ("BEF 2 FEB 1800", "1800-02-02"),
        ("EST 1790", "1790-01-01"),
        ("31 FEB 1850", None),
        ("sometime", None),
        ("", None),
        (None, None),
    ])
    def test_parse_gedcom_date(self, value, expected):
        assert parse_gedcom_date(value) == expected

    def test_format_gedcom_date(self):
        assert format_gedcom_date("1850-03-05") == "05 MAR 1850"
        assert format_gedcom_date(None) is None


# ============================================================================
# JSON Tests
# ============================================================================

class TestJson:
    """Tests for JSON export and import."""

    def test_export_shape(self, store, family):
        exported = export_json_data(store)

        assert exported["version"] == "1.0"
        assert "exportDate" in exported
        data = exported["data"]
        assert len(data["individuals"]) == 5
        assert len(data["relationships"]) == 5
        assert data["marriages"][0]["marriageDate"] == "1945-06-02"
        assert set(data) == {
            "individuals", "marriages", "relationships", "events",
            "sources", "media", "mediaLinks", "sourceCitations",
        }

    def test_import_remaps_ids(self, store, other_store, family):
        # Occupy the low ids so imported records cannot keep theirs
        person(other_store, "Existing", "Person")
        person(other_store, "Another", "Person")

        result = import_json(other_store, export_json(store))

        assert result["success"], result["errors"]
        assert result["imported"]["individuals"] == 5
        assert result["imported"]["marriages"] == 1
        assert result["imported"]["relations"] == 5

        by_id = {i.id: i.first_name for i in other_store.list_individuals()}
        pairs = {(by_id[e.parent_id], by_id[e.child_id]) for e in other_store.list_edges()}
        assert pairs == {
            ("Tom", "Ann"), ("Eve", "Ann"), ("Tom", "Bill"), ("Eve", "Bill"), ("Tom", "Carl"),
        }
        marriage = other_store.list_marriages()[0]
        assert (by_id[marriage.spouse1_id], by_id[marriage.spouse2_id]) == ("Tom", "Eve")
        assert [by_id[e.individual_id] for e in other_store.list_events()] == ["Ann"]
        citation = other_store.list_citations()[0]
        assert by_id[citation.individual_id] == "Tom"
        media = other_store.list_media()[0]
        assert by_id[media.individual_id] == "Eve"
        link = other_store.list_media_links()[0]
        assert (by_id[link.individual_id], link.media_id) == ("Tom", media.id)

    def test_import_reports_dangling_references(self, other_store):
        payload = {
            "version": "1.0",
            "data": {
                "individuals": [{"id": 7, "firstName": "Solo", "lastName": "Han"}],
                "relationships": [{"id": 1, "parentId": 7, "childId": 8}],
            },
        }

        result = import_json_data(other_store, payload)

        assert not result["success"]
        assert result["imported"]["individuals"] == 1
        assert result["imported"]["relations"] == 0
        assert len(result["errors"]) == 1

    def test_import_reports_rejected_rows(self, other_store):
        payload = {"version": "1.0", "data": {"individuals": [{"id": 1, "firstName": "NoSurname"}]}}
        result = import_json_data(other_store, payload)
        assert result["imported"]["individuals"] == 0
        assert result["errors"]

    def test_import_requires_version_and_data(self, other_store):
        with pytest.raises(ValidationFailure):
            import_json_data(other_store, {"data": {}})
        with pytest.raises(ValidationFailure):
            import_json(other_store, "{not json")

    def test_import_rejects_non_list_section(self, other_store):
        with pytest.raises(ValidationFailure):
            import_json_data(other_store, {"version": "1.0", "data": {"individuals": None}})
        assert other_store.list_individuals() == []

    def test_import_reports_non_object_records(self, other_store):
        payload = {
            "version": "1.0",
            "data": {"individuals": ["oops", {"id": 1, "firstName": "Kept", "lastName": "Row"}]},
        }

        result = import_json_data(other_store, payload)

        assert not result["success"]
        assert result["imported"]["individuals"] == 1
        assert result["errors"] == ["individuals[0]: expected an object, got str"]


# ============================================================================
# GEDCOM Tests
# ============================================================================

class TestGedcomExport:
    """Tests for GEDCOM export."""

    def test_header_and_trailer(self, store, family):
        content = export_gedcom(store)
        lines = content.splitlines()
        assert lines[0] == "0 HEAD"
        assert "2 VERS 5.5.1" in lines
        assert lines[-1] == "0 TRLR"

    def test_individual_records(self, store, family):
        dad, mum, _, _, half = family
        content = export_gedcom(store)

        assert f"0 @I{dad.id}@ INDI" in content
        assert "1 NAME Tom /Smith/" in content
        assert "1 NAME Eve Rose /Brown/" in content
        assert "2 GIVN Eve Rose" in content
        assert "2 DATE 01 MAY 1920" in content
        assert "1 SEX M" in content
        assert "1 SEX F" in content
        assert "1 SEX U" in content
        assert "1 DEAT Y" in content

    def test_marriage_family_and_single_parent_family(self, store, family):
        dad, mum, kid1, kid2, half = family
        content = export_gedcom(store)
        families = content.split(" FAM\n")[1:]

        assert len(families) == 2
        married = families[0]
        assert f"1 HUSB @I{dad.id}@" in married
        assert f"1 WIFE @I{mum.id}@" in married
        assert f"1 CHIL @I{kid1.id}@" in married
        assert f"1 CHIL @I{kid2.id}@" in married
        assert f"@I{half.id}@" not in married
        assert "2 DATE 02 JUN 1945" in married

        single = families[1]
        assert f"1 HUSB @I{dad.id}@" in single
        assert f"1 CHIL @I{half.id}@" in single
        assert "WIFE" not in single.split("0 TRLR")[0]

    def test_export_parses(self, store, family):
        parser = parse_gedcom_content(export_gedcom(store))
        assert len(parser.get_root_child_elements()) > 5


class TestGedcomImport:
    """Tests for GEDCOM import."""

    def test_import_sample(self, store):
        result = import_gedcom(store, SAMPLE_GEDCOM)

        assert result["imported"]["individuals"] == 3
        assert result["imported"]["marriages"] == 1
        assert result["imported"]["relations"] == 2
        # The nameless individual is skipped and reported
        assert len(result["errors"]) == 1
        assert not result["success"]

    def test_imported_fields(self, store):
        import_gedcom(store, SAMPLE_GEDCOM)
        people = {i.first_name: i for i in store.list_individuals()}

        john = people["John"]
        assert john.last_name == "Smith"
        assert john.gender == "male"
        assert john.birth_date == "1850-03-15"
        assert john.birth_place == "Boston, Massachusetts"
        assert john.death_date == "1920-01-01"
        assert john.is_living is False

        mary = people["Mary"]
        assert mary.middle_name == "Ann"
        assert mary.birth_date == "1855-01-01"
        assert mary.is_living is True
        assert mary.notes == "Kept the family bible\nSecond line"

        assert people["William"].birth_date == "1880-06-01"

    def test_imported_family(self, store):
        import_gedcom(store, SAMPLE_GEDCOM)
        people = {i.first_name: i.id for i in store.list_individuals()}

        marriage = store.list_marriages()[0]
        assert {marriage.spouse1_id, marriage.spouse2_id} == {people["John"], people["Mary"]}
        assert marriage.marriage_date == "1878-06-10"
        assert marriage.marriage_place == "Salem"
        parents = {e.parent_id for e in store.get_edges_by_child_ids([people["William"]])}
        assert parents == {people["John"], people["Mary"]}

    def test_export_then_import(self, store, other_store, family):
        result = import_gedcom(other_store, export_gedcom(store))

        assert result["success"], result["errors"]
        assert len(other_store.list_individuals()) == 5
        assert len(other_store.list_edges()) == 5
        assert len(other_store.list_marriages()) == 1


# ============================================================================
# Backup Tests
# ============================================================================

class TestBackup:
    """Tests for backup and restore."""

    def test_backup_envelope(self, store, family):
        backup = create_backup(store)
        assert backup["version"] == "1.0"
        assert "backupDate" in backup
        assert len(backup["data"]["data"]["individuals"]) == 5
        json.dumps(backup)

    def test_restore_replaces_everything(self, store, family):
        backup = create_backup(store)
        person(store, "Added", "Later")

        result = restore_backup(store, backup)

        assert result["success"], result["errors"]
        names = {i.first_name for i in store.list_individuals()}
        assert names == {"Tom", "Eve", "Ann", "Bill", "Carl"}
        assert len(store.list_edges()) == 5

    def test_invalid_backup_leaves_data_alone(self, store, family):
        with pytest.raises(ValidationFailure):
            restore_backup(store, {"version": "1.0"})
        assert len(store.list_individuals()) == 5

    def test_malformed_section_leaves_data_alone(self, store, family):
        backup = create_backup(store)
        backup["data"]["data"]["marriages"] = None

        with pytest.raises(ValidationFailure):
            restore_backup(store, backup)

        assert len(store.list_individuals()) == 5
        assert len(store.list_marriages()) == 1

    def test_non_object_record_leaves_data_alone(self, store, family):
        backup = create_backup(store)
        backup["data"]["data"]["relationships"].append(42)

        with pytest.raises(ValidationFailure):
            restore_backup(store, backup)

        assert len(store.list_edges()) == 5
