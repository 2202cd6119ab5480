"""Tests for the HTTP API."""

import os
import pytest
import sys

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from config import Settings
from main import create_app


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def client(tmp_path):
    settings = Settings(database_path=str(tmp_path / "api.db"), max_generations=5)
    with TestClient(create_app(settings)) as c:
        yield c


def add_person(client, first, last="Smith", **extra):
    response = client.post("/individuals", json={"firstName": first, "lastName": last, **extra})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def add_link(client, parent, child):
    response = client.post("/relationships", json={"parentId": parent["id"], "childId": child["id"]})
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.fixture
def lineage(client):
    """Grandparent -> Parent -> Child."""
    grandparent = add_person(client, "Gina", birthDate="1900-01-01")
    parent = add_person(client, "Pete", birthDate="1930-01-01")
    child = add_person(client, "Cora", birthDate="1960-01-01")
    add_link(client, grandparent, parent)
    add_link(client, parent, child)
    return grandparent, parent, child


# ============================================================================
# Basic Endpoint Tests
# ============================================================================

class TestHealth:

    def test_health(self, client, tmp_path):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"].endswith("api.db")


class TestIndividuals:
    """Tests for individual endpoints."""

    def test_create_and_fetch(self, client):
        created = add_person(client, "Ada", "Lovelace", birthDate="1815-12-10")

        response = client.get(f"/individuals/{created['id']}")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["fullName"] == "Ada Lovelace"
        assert body["data"]["parents"] == []

    def test_create_invalid(self, client):
        response = client.post("/individuals", json={"firstName": "", "lastName": "X"})
        assert response.status_code == 422
        assert response.json()["detail"]["errors"]

    def test_unknown_individual(self, client):
        response = client.get("/individuals/999")
        assert response.status_code == 404
        assert response.json()["detail"] == "Individual not found: 999"

    def test_partial_update(self, client):
        ada = add_person(client, "Ada", "Byron")
        response = client.put(f"/individuals/{ada['id']}", json={"lastName": "Lovelace"})
        assert response.status_code == 200
        assert response.json()["data"]["lastName"] == "Lovelace"
        assert response.json()["data"]["firstName"] == "Ada"

    def test_update_rejected_against_stored_dates(self, client):
        ada = add_person(client, "Ada", "Byron", birthDate="1815-12-10", isLiving=False)
        response = client.put(f"/individuals/{ada['id']}", json={"deathDate": "1800-01-01"})
        assert response.status_code == 422

    def test_list_search_and_stats(self, client):
        add_person(client, "Zed", "Young")
        add_person(client, "Amy", "Adams", isLiving=False)

        names = [p["lastName"] for p in client.get("/individuals").json()["data"]]
        assert names == ["Adams", "Young"]
        found = client.get("/individuals/search", params={"q": "zed"}).json()["data"]
        assert [p["firstName"] for p in found] == ["Zed"]
        assert client.get("/stats").json()["data"] == {"total": 2, "living": 1, "deceased": 1}

    def test_search_requires_term(self, client):
        assert client.get("/individuals/search").status_code == 422

    def test_delete(self, client, lineage):
        grandparent, parent, _ = lineage

        response = client.delete(f"/individuals/{grandparent['id']}")

        assert response.status_code == 200
        assert client.get(f"/individuals/{grandparent['id']}").status_code == 404
        roots = client.get("/tree").json()["data"]
        assert [r["id"] for r in roots] == [parent["id"]]

    def test_delete_unknown(self, client):
        assert client.delete("/individuals/31337").status_code == 404


# ============================================================================
# Tree Tests
# ============================================================================

class TestTree:
    """Tests for forest and generation walk endpoints."""

    def test_tree(self, client, lineage):
        grandparent, parent, child = lineage

        roots = client.get("/tree").json()["data"]

        assert len(roots) == 1
        assert roots[0]["id"] == grandparent["id"]
        assert roots[0]["children"][0]["children"][0]["id"] == child["id"]

    def test_tree_max_depth(self, client, lineage):
        roots = client.get("/tree", params={"max_depth": 0}).json()["data"]
        assert roots[0]["children"] == []

    def test_ancestors(self, client, lineage):
        grandparent, parent, child = lineage

        response = client.get(f"/individuals/{child['id']}/ancestors", params={"generations": 2})

        assert response.status_code == 200
        assert [(a["id"], a["generation"]) for a in response.json()["data"]] == [
            (parent["id"], 0),
            (grandparent["id"], 1),
        ]

    def test_descendants_default_generations(self, client, lineage):
        grandparent, parent, child = lineage
        data = client.get(f"/individuals/{grandparent['id']}/descendants").json()["data"]
        assert [d["id"] for d in data] == [parent["id"], child["id"]]

    def test_generations_bounds(self, client, lineage):
        child = lineage[2]
        assert client.get(f"/individuals/{child['id']}/ancestors", params={"generations": -1}).status_code == 422
        assert client.get(f"/individuals/{child['id']}/ancestors", params={"generations": 6}).status_code == 422

    def test_ancestors_unknown(self, client):
        assert client.get("/individuals/404/ancestors").status_code == 404

    def test_youngest(self, client, lineage):
        data = client.get("/youngest").json()["data"]
        assert [p["id"] for p in data] == [lineage[2]["id"]]


# ============================================================================
# Relationship & Marriage Tests
# ============================================================================

class TestRelationships:
    """Tests for parent-child and marriage endpoints."""

    def test_cycle_rejected(self, client, lineage):
        grandparent, _, child = lineage
        response = client.post(
            "/relationships", json={"parentId": child["id"], "childId": grandparent["id"]}
        )
        assert response.status_code in (409, 422)

    def test_cycle_rejected_without_dates(self, client):
        a = add_person(client, "A")
        b = add_person(client, "B")
        add_link(client, a, b)
        response = client.post("/relationships", json={"parentId": b["id"], "childId": a["id"]})
        assert response.status_code == 409
        assert response.json()["detail"]["path"]

    def test_self_link_rejected(self, client):
        a = add_person(client, "A")
        response = client.post("/relationships", json={"parentId": a["id"], "childId": a["id"]})
        assert response.status_code == 422

    def test_unknown_parent(self, client):
        a = add_person(client, "A")
        response = client.post("/relationships", json={"parentId": 999, "childId": a["id"]})
        assert response.status_code == 404

    def test_update_and_delete_relationship(self, client, lineage):
        _, parent, child = lineage
        edge_id = client.get(f"/individuals/{child['id']}").json()["data"]["parents"][0]["id"]

        response = client.put(f"/relationships/{edge_id}", json={"relationshipType": "adopted"})
        assert response.status_code == 200
        assert response.json()["data"]["relationshipType"] == "adopted"

        assert client.delete(f"/relationships/{edge_id}").status_code == 200
        assert client.delete(f"/relationships/{edge_id}").status_code == 404

    def test_marriage_lifecycle(self, client):
        a = add_person(client, "A")
        b = add_person(client, "B")

        response = client.post("/marriages", json={"spouse1Id": a["id"], "spouse2Id": b["id"]})
        assert response.status_code == 201
        marriage = response.json()["data"]

        response = client.put(f"/marriages/{marriage['id']}", json={"marriagePlace": "Paris"})
        assert response.json()["data"]["marriagePlace"] == "Paris"

        profile = client.get(f"/individuals/{a['id']}").json()["data"]
        assert [m["id"] for m in profile["marriages"]] == [marriage["id"]]
        assert client.delete(f"/marriages/{marriage['id']}").status_code == 200

    def test_marriage_to_self(self, client):
        a = add_person(client, "A")
        response = client.post("/marriages", json={"spouse1Id": a["id"], "spouse2Id": a["id"]})
        assert response.status_code == 422


# ============================================================================
# Attached Record Tests
# ============================================================================

class TestAttachedRecords:
    """Tests for events, sources and media."""

    def test_events(self, client):
        a = add_person(client, "A")
        response = client.post(f"/individuals/{a['id']}/events", json={"eventType": "census"})
        assert response.status_code == 201
        event = response.json()["data"]

        response = client.put(f"/events/{event['id']}", json={"eventPlace": "Leeds"})
        assert response.json()["data"]["eventPlace"] == "Leeds"
        assert len(client.get(f"/individuals/{a['id']}/events").json()["data"]) == 1
        assert client.delete(f"/events/{event['id']}").status_code == 200
        assert client.put(f"/events/{event['id']}", json={}).status_code == 404

    def test_sources_and_citations(self, client):
        a = add_person(client, "A")
        source = client.post("/sources", json={"title": "Parish register"}).json()["data"]

        response = client.post(f"/individuals/{a['id']}/sources", json={"sourceId": source["id"], "pageNumber": "4"})
        assert response.status_code == 201
        assert client.post(f"/individuals/{a['id']}/sources", json={"sourceId": 999}).status_code == 404

        assert client.put(f"/sources/{source['id']}", json={"author": "Vicar"}).json()["data"]["author"] == "Vicar"
        assert len(client.get("/sources").json()["data"]) == 1
        assert client.delete(f"/sources/{source['id']}").status_code == 200

    def test_media(self, client):
        a = add_person(client, "A")
        response = client.post(
            "/media",
            json={"title": "Photo", "fileUrl": "/p.jpg", "fileType": "image", "individualId": a["id"]},
        )
        assert response.status_code == 201
        media = response.json()["data"]

        assert client.post(f"/individuals/{a['id']}/media", json={"mediaId": media["id"]}).status_code == 201
        assert client.put(f"/media/{media['id']}", json={"title": "Portrait"}).json()["data"]["title"] == "Portrait"
        assert len(client.get("/media").json()["data"]) == 1
        assert client.delete(f"/media/{media['id']}").status_code == 200

    def test_media_for_unknown_individual(self, client):
        response = client.post(
            "/media", json={"title": "Photo", "fileUrl": "/p.jpg", "fileType": "image", "individualId": 99}
        )
        assert response.status_code == 404


# ============================================================================
# Import / Export Tests
# ============================================================================

SAMPLE_GEDCOM = """0 HEAD
1 GEDC
2 VERS 5.5.1
0 @I1@ INDI
1 NAME John /Smith/
1 SEX M
0 @I2@ INDI
1 NAME Jane /Smith/
1 SEX F
0 @I3@ INDI
1 NAME Jack /Smith/
0 @F1@ FAM
1 HUSB @I1@
1 WIFE @I2@
1 CHIL @I3@
0 TRLR
"""


class TestImportExport:
    """Tests for import, export, backup and restore endpoints."""

    def test_upload_gedcom(self, client):
        response = client.post(
            "/upload-gedcom", files={"file": ("family.ged", SAMPLE_GEDCOM.encode("utf-8"), "text/plain")}
        )

        assert response.status_code == 200
        assert response.json()["data"]["imported"]["individuals"] == 3
        roots = client.get("/tree").json()["data"]
        assert {r["firstName"] for r in roots} == {"John", "Jane"}

    def test_upload_rejects_other_files(self, client):
        response = client.post("/upload-gedcom", files={"file": ("family.txt", b"hello", "text/plain")})
        assert response.status_code == 400

    def test_export_gedcom(self, client, lineage):
        response = client.get("/export/gedcom")
        assert response.status_code == 200
        assert "attachment" in response.headers["content-disposition"]
        assert "0 TRLR" in response.text

    def test_json_export_import(self, client, lineage):
        exported = client.get("/export/json").json()
        assert exported["version"] == "1.0"

        response = client.post("/import/json", json=exported)

        assert response.status_code == 200
        assert response.json()["data"]["imported"]["relations"] == 2
        assert client.get("/stats").json()["data"]["total"] == 6

    def test_import_json_invalid(self, client):
        assert client.post("/import/json", json={"data": {}}).status_code == 422

    def test_import_json_reports_bad_records(self, client):
        payload = {"version": "1.0", "data": {"individuals": ["oops"]}}

        response = client.post("/import/json", json=payload)

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["data"]["errors"]

    def test_backup_and_restore(self, client, lineage):
        backup = client.get("/backup").json()
        add_person(client, "Extra")

        response = client.post("/restore", json=backup)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get("/stats").json()["data"]["total"] == 3

    def test_malformed_restore_keeps_data(self, client, lineage):
        backup = client.get("/backup").json()
        backup["data"]["data"]["marriages"] = None

        response = client.post("/restore", json=backup)

        assert response.status_code == 422
        assert client.get("/stats").json()["data"]["total"] == 3
