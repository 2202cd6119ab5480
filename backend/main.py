"""Family Tree Keeper - Genealogy Backend.

FastAPI server for recording individuals and their family relationships,
browsing the reconstructed tree and moving data in and out as JSON or GEDCOM.
"""

import json
import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("familytree")

from fastapi import APIRouter, Body, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from config import Settings
from errors import (
    CycleDetectedError,
    FamilyTreeError,
    NotFoundError,
    PartialCascadeError,
    ValidationFailure,
)
from family_db import FamilyStore
from family_tree import FamilyTree
from import_export import (
    create_backup,
    export_gedcom,
    export_json,
    import_gedcom,
    import_json_data,
    restore_backup,
)
from validation import (
    CitationInput,
    EventInput,
    MediaInput,
    MediaLinkInput,
    SourceInput,
    ValidationResult,
    validate_individual,
    validate_marriage,
    validate_parent_child,
    validate_record,
)

router = APIRouter()


# ============================================================================
# Helpers
# ============================================================================

def _http_error(exc: FamilyTreeError) -> HTTPException:
    """Map a domain error onto the matching HTTP status."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationFailure):
        return HTTPException(status_code=422, detail={"message": "Validation failed", "errors": exc.errors})
    if isinstance(exc, CycleDetectedError):
        return HTTPException(status_code=409, detail={"message": str(exc), "path": exc.path})
    if isinstance(exc, PartialCascadeError):
        return HTTPException(
            status_code=500,
            detail={"message": str(exc), "completed": exc.completed, "failedStep": exc.failed_step},
        )
    return HTTPException(status_code=500, detail=str(exc))


@contextmanager
def translate_errors():
    try:
        yield
    except FamilyTreeError as exc:
        logger.warning(f"Request failed: {exc}")
        raise _http_error(exc) from exc


def _ok(data: Any, warnings: list[str] | None = None) -> dict[str, Any]:
    body = {"success": True, "data": data}
    if warnings:
        body["warnings"] = warnings
    return body


def _valid(result: ValidationResult) -> dict[str, Any]:
    if not result.valid:
        raise ValidationFailure(result.errors)
    return result.data


def _store(request: Request) -> FamilyStore:
    return request.app.state.store


def _tree(request: Request) -> FamilyTree:
    return request.app.state.tree


def _generations(request: Request, generations: int | None) -> int | None:
    limit = request.app.state.settings.max_generations
    if generations is not None and generations > limit:
        raise ValidationFailure([f"generations must be at most {limit}"])
    return generations


def _download(content: str, filename: str, media_type: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ============================================================================
# Tree & Individuals
# ============================================================================

@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "database": request.app.state.settings.database_path,
    }


@router.get("/tree")
async def get_tree(request: Request, max_depth: int | None = Query(default=None, ge=0)):
    """The whole family rendered as nested roots and children."""
    with translate_errors():
        forest = _tree(request).render_forest(max_depth=max_depth)
    return _ok(forest)


@router.get("/individuals")
async def get_individuals(request: Request):
    with translate_errors():
        individuals = _store(request).list_individuals()
    logger.info(f"Returning {len(individuals)} individuals")
    return _ok([i.to_dict() for i in individuals])


@router.get("/individuals/search")
async def search_individuals(request: Request, q: str = Query(min_length=1)):
    with translate_errors():
        return _ok(_tree(request).search(q))


@router.get("/stats")
async def get_stats(request: Request):
    with translate_errors():
        return _ok(_store(request).get_stats())


@router.get("/youngest")
async def get_youngest_generation(request: Request):
    """Individuals without children (good starting points)."""
    with translate_errors():
        youngest = _tree(request).find_leaves()
    logger.info(f"Found {len(youngest)} individuals in youngest generation")
    return _ok(youngest)


@router.post("/individuals", status_code=201)
async def add_individual(request: Request, payload: dict[str, Any] = Body(...)):
    with translate_errors():
        result = validate_individual(payload)
        individual = _store(request).add_individual(_valid(result))
    return _ok(individual.to_dict(), result.warnings)


@router.get("/individuals/{individual_id}")
async def get_individual(request: Request, individual_id: int):
    """Profile with parent/child edges, marriages and events."""
    with translate_errors():
        return _ok(_tree(request).get_profile(individual_id))


@router.put("/individuals/{individual_id}")
async def update_individual(request: Request, individual_id: int, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        existing = store.require_individual(individual_id)
        result = validate_individual(payload, existing)
        individual = store.update_individual(individual_id, _valid(result))
    return _ok(individual.to_dict(), result.warnings)


@router.delete("/individuals/{individual_id}")
async def delete_individual(request: Request, individual_id: int):
    with translate_errors():
        _tree(request).delete_individual(individual_id)
    return _ok({"deleted": individual_id})


@router.get("/individuals/{individual_id}/ancestors")
async def get_ancestors(
    request: Request, individual_id: int, generations: int | None = Query(default=None, ge=0)
):
    with translate_errors():
        ancestors = _tree(request).get_ancestors(individual_id, _generations(request, generations))
    return _ok(ancestors)


@router.get("/individuals/{individual_id}/descendants")
async def get_descendants(
    request: Request, individual_id: int, generations: int | None = Query(default=None, ge=0)
):
    with translate_errors():
        descendants = _tree(request).get_descendants(individual_id, _generations(request, generations))
    return _ok(descendants)


# ============================================================================
# Events
# ============================================================================

@router.get("/individuals/{individual_id}/events")
async def get_events(request: Request, individual_id: int):
    store = _store(request)
    with translate_errors():
        store.require_individual(individual_id)
        return _ok([e.to_dict() for e in store.list_events(individual_id)])


@router.post("/individuals/{individual_id}/events", status_code=201)
async def add_event(request: Request, individual_id: int, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        store.require_individual(individual_id)
        values = _valid(validate_record(EventInput, payload))
        event = store.add_event({**values, "individual_id": individual_id})
    return _ok(event.to_dict())


@router.put("/events/{event_id}")
async def update_event(request: Request, event_id: int, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        existing = store.get_event(event_id)
        if existing is None:
            raise NotFoundError("event", event_id)
        event = store.update_event(event_id, _valid(validate_record(EventInput, payload, existing)))
    return _ok(event.to_dict())


@router.delete("/events/{event_id}")
async def delete_event(request: Request, event_id: int):
    with translate_errors():
        if not _store(request).delete_event(event_id):
            raise NotFoundError("event", event_id)
    return _ok({"deleted": event_id})


# ============================================================================
# Marriages & Relationships
# ============================================================================

@router.post("/marriages", status_code=201)
async def add_marriage(request: Request, payload: dict[str, Any] = Body(...)):
    with translate_errors():
        marriage = _tree(request).add_marriage(_valid(validate_marriage(payload)))
    return _ok(marriage.to_dict())


@router.put("/marriages/{marriage_id}")
async def update_marriage(request: Request, marriage_id: int, payload: dict[str, Any] = Body(...)):
    with translate_errors():
        existing = _store(request).get_marriage(marriage_id)
        if existing is None:
            raise NotFoundError("marriage", marriage_id)
        values = _valid(validate_marriage(payload, existing))
        marriage = _tree(request).update_marriage(marriage_id, values)
    return _ok(marriage.to_dict())


@router.delete("/marriages/{marriage_id}")
async def delete_marriage(request: Request, marriage_id: int):
    with translate_errors():
        if not _store(request).delete_marriage(marriage_id):
            raise NotFoundError("marriage", marriage_id)
    return _ok({"deleted": marriage_id})


def _validate_edge(store: FamilyStore, payload: dict[str, Any], existing=None) -> ValidationResult:
    """Field checks first, then the birth-date checks against both people."""
    result = validate_parent_child(payload, existing=existing)
    if not result.valid:
        return result
    parent_id = result.data.get("parent_id", existing.parent_id if existing else None)
    child_id = result.data.get("child_id", existing.child_id if existing else None)
    parent = store.require_individual(parent_id)
    child = store.require_individual(child_id)
    return validate_parent_child(payload, parent, child, existing)


@router.post("/relationships", status_code=201)
async def add_relationship(request: Request, payload: dict[str, Any] = Body(...)):
    with translate_errors():
        result = _validate_edge(_store(request), payload)
        edge = _tree(request).add_relationship(_valid(result))
    return _ok(edge.to_dict(), result.warnings)


@router.put("/relationships/{edge_id}")
async def update_relationship(request: Request, edge_id: int, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        existing = store.get_edge(edge_id)
        if existing is None:
            raise NotFoundError("relationship", edge_id)
        result = _validate_edge(store, payload, existing)
        edge = _tree(request).update_relationship(edge_id, _valid(result))
    return _ok(edge.to_dict(), result.warnings)


@router.delete("/relationships/{edge_id}")
async def delete_relationship(request: Request, edge_id: int):
    with translate_errors():
        if not _store(request).delete_edge(edge_id):
            raise NotFoundError("relationship", edge_id)
    return _ok({"deleted": edge_id})


# ============================================================================
# Sources & Media
# ============================================================================

@router.get("/sources")
async def get_sources(request: Request):
    with translate_errors():
        return _ok([s.to_dict() for s in _store(request).list_sources()])


@router.post("/sources", status_code=201)
async def add_source(request: Request, payload: dict[str, Any] = Body(...)):
    with translate_errors():
        source = _store(request).add_source(_valid(validate_record(SourceInput, payload)))
    return _ok(source.to_dict())


@router.put("/sources/{source_id}")
async def update_source(request: Request, source_id: int, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        existing = store.get_source(source_id)
        if existing is None:
            raise NotFoundError("source", source_id)
        source = store.update_source(source_id, _valid(validate_record(SourceInput, payload, existing)))
    return _ok(source.to_dict())


@router.delete("/sources/{source_id}")
async def delete_source(request: Request, source_id: int):
    with translate_errors():
        if not _store(request).delete_source(source_id):
            raise NotFoundError("source", source_id)
    return _ok({"deleted": source_id})


@router.post("/individuals/{individual_id}/sources", status_code=201)
async def cite_source(request: Request, individual_id: int, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        store.require_individual(individual_id)
        values = _valid(validate_record(CitationInput, payload))
        if store.get_source(values["source_id"]) is None:
            raise NotFoundError("source", values["source_id"])
        citation = store.add_citation({**values, "individual_id": individual_id})
    return _ok(citation.to_dict())


@router.get("/media")
async def get_media(request: Request):
    with translate_errors():
        return _ok([m.to_dict() for m in _store(request).list_media()])


@router.post("/media", status_code=201)
async def add_media(request: Request, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        values = _valid(validate_record(MediaInput, payload))
        if values.get("individual_id") is not None:
            store.require_individual(values["individual_id"])
        media = store.add_media(values)
    return _ok(media.to_dict())


@router.put("/media/{media_id}")
async def update_media(request: Request, media_id: int, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        existing = store.get_media(media_id)
        if existing is None:
            raise NotFoundError("media", media_id)
        values = _valid(validate_record(MediaInput, payload, existing))
        if values.get("individual_id") is not None:
            store.require_individual(values["individual_id"])
        media = store.update_media(media_id, values)
    return _ok(media.to_dict())


@router.delete("/media/{media_id}")
async def delete_media(request: Request, media_id: int):
    with translate_errors():
        if not _store(request).delete_media(media_id):
            raise NotFoundError("media", media_id)
    return _ok({"deleted": media_id})


@router.post("/individuals/{individual_id}/media", status_code=201)
async def link_media(request: Request, individual_id: int, payload: dict[str, Any] = Body(...)):
    store = _store(request)
    with translate_errors():
        store.require_individual(individual_id)
        values = _valid(validate_record(MediaLinkInput, payload))
        if store.get_media(values["media_id"]) is None:
            raise NotFoundError("media", values["media_id"])
        link = store.add_media_link({**values, "individual_id": individual_id})
    return _ok(link.to_dict())


# ============================================================================
# Import / Export
# ============================================================================

@router.get("/export/json")
async def export_json_file(request: Request):
    with translate_errors():
        content = export_json(_store(request))
    return _download(content, "family-tree.json", "application/json")


@router.get("/export/gedcom")
async def export_gedcom_file(request: Request):
    with translate_errors():
        content = export_gedcom(_store(request))
    return _download(content, "family-tree.ged", "text/plain; charset=utf-8")


@router.post("/import/json")
async def import_json_file(request: Request, payload: dict[str, Any] = Body(...)):
    with translate_errors():
        result = import_json_data(_store(request), payload)
    return {"success": result["success"], "data": result}


@router.post("/upload-gedcom")
async def upload_gedcom(request: Request, file: UploadFile = File(...)):
    """Upload a GEDCOM file and import its individuals and families."""
    logger.info(f"Received GEDCOM file upload: {file.filename}")

    if not file.filename.lower().endswith(('.ged', '.gedcom')):
        logger.warning(f"Invalid file type: {file.filename}")
        raise HTTPException(status_code=400, detail="File must be a GEDCOM file (.ged or .gedcom)")

    content = await file.read()
    logger.debug(f"Read {len(content)} bytes from file")
    try:
        content_str = content.decode('utf-8')
    except UnicodeDecodeError:
        logger.info("UTF-8 decode failed, trying latin-1 encoding")
        content_str = content.decode('latin-1')

    with translate_errors():
        try:
            result = import_gedcom(_store(request), content_str)
        except FamilyTreeError:
            raise
        except Exception as e:
            logger.error(f"Failed to parse GEDCOM file: {str(e)}")
            raise HTTPException(status_code=400, detail=f"Failed to parse GEDCOM file: {str(e)}") from e

    logger.info(f"Imported GEDCOM file {file.filename}: {result['imported']}")
    return {"success": result["success"], "data": result}


@router.get("/backup")
async def backup(request: Request):
    with translate_errors():
        snapshot = create_backup(_store(request))
    filename = f"family-tree-backup-{snapshot['backupDate']}.json"
    return _download(json.dumps(snapshot, indent=2), filename, "application/json")


@router.post("/restore")
async def restore(request: Request, payload: dict[str, Any] = Body(...)):
    with translate_errors():
        result = restore_backup(_store(request), payload)
    return {"success": result["success"], "data": result}


# ============================================================================
# Application
# ============================================================================

def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application; the database opens and closes with its lifespan."""
    settings = settings or Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - open and close the database."""
        store = FamilyStore(settings.database_path, atomic_deletes=settings.atomic_deletes)
        store.open()
        app.state.store = store
        app.state.tree = FamilyTree(store, default_generations=settings.default_generations)
        logger.info(f"✓ Family tree database ready at {settings.database_path}")

        yield

        logger.info("Shutting down, closing database...")
        store.close()

    app = FastAPI(
        title="Family Tree Keeper",
        description="Genealogy records, family tree reconstruction and GEDCOM import/export",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Configure CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
