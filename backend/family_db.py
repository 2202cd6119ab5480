"""SQLite storage for the family tree.

``FamilyStore`` owns a single connection with an explicit lifecycle: the
application opens it on startup and closes it on shutdown. Every sqlite3
failure is re-raised as ``PersistenceError``.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime
from typing import Any, Iterable, Iterator

from errors import NotFoundError, PartialCascadeError, PersistenceError
from models import (
    Citation,
    Event,
    Individual,
    Marriage,
    Media,
    MediaLink,
    ParentChildEdge,
    Source,
)

logger = logging.getLogger("familytree.db")

# Stay under SQLite's bound-parameter limit (999 on older builds)
MAX_BATCH_SIZE = 900

SEARCH_LIMIT = 50

NAME_ORDER = "last_name COLLATE NOCASE, first_name COLLATE NOCASE, id"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS individuals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        middle_name TEXT,
        photo_url TEXT,
        birth_date TEXT,
        death_date TEXT,
        birth_place TEXT,
        death_place TEXT,
        is_living INTEGER NOT NULL DEFAULT 1,
        gender TEXT,
        email TEXT,
        phone TEXT,
        address TEXT,
        notes TEXT,
        privacy_level INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS name_idx ON individuals (last_name, first_name)",
    "CREATE INDEX IF NOT EXISTS is_living_idx ON individuals (is_living)",
    """
    CREATE TABLE IF NOT EXISTS marriages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        spouse1_id INTEGER NOT NULL,
        spouse2_id INTEGER NOT NULL,
        marriage_date TEXT,
        marriage_place TEXT,
        divorce_date TEXT,
        divorce_place TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS spouse_idx ON marriages (spouse1_id, spouse2_id)",
    """
    CREATE TABLE IF NOT EXISTS relationships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        parent_id INTEGER NOT NULL,
        child_id INTEGER NOT NULL,
        relationship_type TEXT NOT NULL DEFAULT 'biological',
        is_primary INTEGER NOT NULL DEFAULT 1,
        notes TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS parent_child_idx ON relationships (parent_id, child_id)",
    "CREATE INDEX IF NOT EXISTS child_parent_idx ON relationships (child_id, parent_id)",
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        individual_id INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        event_date TEXT,
        event_place TEXT,
        description TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS individual_event_idx ON events (individual_id, event_type)",
    """
    CREATE TABLE IF NOT EXISTS sources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT,
        publication TEXT,
        publication_date TEXT,
        url TEXT,
        notes TEXT,
        source_type TEXT NOT NULL DEFAULT 'document',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS media (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        individual_id INTEGER,
        title TEXT NOT NULL,
        description TEXT,
        file_url TEXT NOT NULL,
        file_type TEXT NOT NULL,
        file_size INTEGER,
        upload_date TEXT NOT NULL,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS individual_media_idx ON media (individual_id)",
    """
    CREATE TABLE IF NOT EXISTS individual_sources (
        individual_id INTEGER NOT NULL,
        source_id INTEGER NOT NULL,
        citation TEXT,
        page_number TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (individual_id, source_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS individual_media (
        individual_id INTEGER NOT NULL,
        media_id INTEGER NOT NULL,
        relationship TEXT NOT NULL DEFAULT 'subject',
        notes TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (individual_id, media_id)
    )
    """,
]

# Ordered removal of everything that references an individual, ending with
# the individual row itself. Each statement binds the id once per "?".
CASCADE_STEPS = [
    ("relationships", "DELETE FROM relationships WHERE parent_id = ? OR child_id = ?"),
    ("marriages", "DELETE FROM marriages WHERE spouse1_id = ? OR spouse2_id = ?"),
    ("events", "DELETE FROM events WHERE individual_id = ?"),
    (
        "media_links",
        "DELETE FROM individual_media WHERE individual_id = ? "
        "OR media_id IN (SELECT id FROM media WHERE individual_id = ?)",
    ),
    ("media", "DELETE FROM media WHERE individual_id = ?"),
    ("source_citations", "DELETE FROM individual_sources WHERE individual_id = ?"),
    ("individual", "DELETE FROM individuals WHERE id = ?"),
]

ALL_TABLES = [
    "individual_media",
    "individual_sources",
    "media",
    "sources",
    "events",
    "relationships",
    "marriages",
    "individuals",
]


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _columns(model) -> set[str]:
    return {f.name for f in fields(model)}


def _chunks(ids: Iterable[int]) -> Iterator[list[int]]:
    """Split ids (deduplicated, order kept) into parameter-limit sized batches."""
    unique = list(dict.fromkeys(ids))
    for start in range(0, len(unique), MAX_BATCH_SIZE):
        yield unique[start:start + MAX_BATCH_SIZE]


class FamilyStore:
    """Persistence for individuals, relationships, marriages and attached records."""

    def __init__(self, db_path: str, atomic_deletes: bool = True):
        self.db_path = db_path
        self.atomic_deletes = atomic_deletes
        self._conn: sqlite3.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "FamilyStore":
        """Connect and make sure the schema exists."""
        if self._conn is not None:
            return self
        logger.info(f"Opening family tree database: {self.db_path}")
        try:
            # isolation_level=None is autocommit: every statement commits alone
            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level="DEFERRED" if self.atomic_deletes else None,
            )
        except sqlite3.Error as exc:
            raise PersistenceError("open", str(exc)) from exc
        self._conn.row_factory = sqlite3.Row
        self.create_schema()
        return self

    def close(self) -> None:
        if self._conn is not None:
            logger.info(f"Closing family tree database: {self.db_path}")
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "FamilyStore":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceError("connection", "database is not open")
        return self._conn

    def create_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        with self._write("create_schema") as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str) -> Iterator[sqlite3.Connection]:
        conn = self.connection
        try:
            yield conn
        except sqlite3.Error as exc:
            logger.error(f"Database operation '{name}' failed: {exc}")
            raise PersistenceError(name, str(exc)) from exc

    @contextmanager
    def _write(self, name: str) -> Iterator[sqlite3.Connection]:
        """Run statements in one transaction; commit on success, roll back on error."""
        with self._operation(name) as conn:
            with conn:
                yield conn

    def _select(self, model, sql: str, params: Iterable[Any] = ()) -> list:
        with self._operation(f"select {model.__name__}") as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [model.from_row(row) for row in rows]

    def _select_one(self, model, sql: str, params: Iterable[Any] = ()):
        rows = self._select(model, sql, params)
        return rows[0] if rows else None

    def _select_in(self, model, sql: str, ids: Iterable[int]) -> list:
        """Run ``sql`` (with an ``{ids}`` placeholder) once per id batch."""
        results = []
        for chunk in _chunks(ids):
            placeholders = ", ".join("?" for _ in chunk)
            results.extend(self._select(model, sql.format(ids=placeholders), chunk))
        return results

    def _insert(self, table: str, model, values: dict[str, Any]) -> int:
        allowed = _columns(model) - {"id"}
        row = {k: v for k, v in values.items() if k in allowed}
        now = _now()
        for stamp in ("created_at", "updated_at"):
            if stamp in allowed and row.get(stamp) is None:
                row[stamp] = now
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._write(f"insert into {table}") as conn:
            cursor = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
        return cursor.lastrowid

    def _update(self, table: str, model, record_id: int, values: dict[str, Any]) -> bool:
        allowed = _columns(model) - {"id", "created_at"}
        row = {k: v for k, v in values.items() if k in allowed}
        if "updated_at" in allowed:
            row["updated_at"] = _now()
        if not row:
            return self._exists(table, record_id)
        assignments = ", ".join(f"{column} = ?" for column in row)
        with self._write(f"update {table}") as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*row.values(), record_id),
            )
        return cursor.rowcount > 0

    def _delete(self, table: str, record_id: int) -> bool:
        with self._write(f"delete from {table}") as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def _exists(self, table: str, record_id: int) -> bool:
        with self._operation(f"lookup in {table}") as conn:
            row = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Individuals
    # ------------------------------------------------------------------

    def list_individuals(self) -> list[Individual]:
        """All individuals sorted by last name, then first name (ties by id)."""
        return self._select(Individual, f"SELECT * FROM individuals ORDER BY {NAME_ORDER}")

    def get_individual(self, individual_id: int) -> Individual | None:
        return self._select_one(Individual, "SELECT * FROM individuals WHERE id = ?", (individual_id,))

    def require_individual(self, individual_id: int) -> Individual:
        individual = self.get_individual(individual_id)
        if individual is None:
            raise NotFoundError("individual", individual_id)
        return individual

    def get_individuals_by_ids(self, ids: Iterable[int]) -> dict[int, Individual]:
        found = self._select_in(Individual, "SELECT * FROM individuals WHERE id IN ({ids})", ids)
        return {individual.id: individual for individual in found}

    def add_individual(self, values: dict[str, Any]) -> Individual:
        new_id = self._insert("individuals", Individual, values)
        logger.info(f"Added individual {new_id}: {values.get('first_name')} {values.get('last_name')}")
        return self.require_individual(new_id)

    def update_individual(self, individual_id: int, values: dict[str, Any]) -> Individual:
        if not self._update("individuals", Individual, individual_id, values):
            raise NotFoundError("individual", individual_id)
        return self.require_individual(individual_id)

    def search_individuals(self, term: str, limit: int = SEARCH_LIMIT) -> list[Individual]:
        # Wildcards in the term match literally
        escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        return self._select(
            Individual,
            "SELECT * FROM individuals "
            "WHERE first_name LIKE ? ESCAPE '\\' OR last_name LIKE ? ESCAPE '\\' "
            "OR middle_name LIKE ? ESCAPE '\\' "
            f"ORDER BY {NAME_ORDER} LIMIT ?",
            (pattern, pattern, pattern, limit),
        )

    def get_stats(self) -> dict[str, int]:
        with self._operation("stats") as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total, "
                "COALESCE(SUM(CASE WHEN is_living THEN 1 ELSE 0 END), 0) AS living "
                "FROM individuals"
            ).fetchone()
        total, living = row["total"], row["living"]
        return {"total": total, "living": living, "deceased": total - living}

    def list_leaf_individuals(self) -> list[Individual]:
        """Individuals that are nobody's parent."""
        return self._select(
            Individual,
            "SELECT * FROM individuals "
            "WHERE id NOT IN (SELECT parent_id FROM relationships) "
            f"ORDER BY {NAME_ORDER}",
        )

    def delete_individual_cascade(self, individual_id: int) -> bool:
        """
        Delete an individual and every row that references it.

        Children are not deleted; they only lose the edge. With
        ``atomic_deletes`` all steps share one transaction and a failure
        rolls everything back. Without it each step commits on its own and a
        failure raises ``PartialCascadeError`` listing the finished steps.

        Returns:
            True if the individual row was removed
        """
        conn = self.connection
        completed: list[str] = []
        current_step = CASCADE_STEPS[0][0]
        try:
            with conn:
                for current_step, sql in CASCADE_STEPS:
                    cursor = conn.execute(sql, (individual_id,) * sql.count("?"))
                    logger.debug(f"Cascade step '{current_step}' removed {cursor.rowcount} row(s)")
                    completed.append(current_step)
        except sqlite3.Error as exc:
            if self.atomic_deletes:
                logger.error(f"Cascading delete of individual {individual_id} rolled back: {exc}")
                raise PersistenceError("delete_individual", str(exc)) from exc
            logger.error(
                f"Cascading delete of individual {individual_id} stopped at '{current_step}' "
                f"after {completed}: {exc}"
            )
            raise PartialCascadeError(individual_id, completed, current_step, str(exc)) from exc
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Parent-child edges
    # ------------------------------------------------------------------

    def list_edges(self) -> list[ParentChildEdge]:
        return self._select(ParentChildEdge, "SELECT * FROM relationships ORDER BY id")

    def get_edges_by_child_ids(self, ids: Iterable[int]) -> list[ParentChildEdge]:
        return self._select_in(
            ParentChildEdge,
            "SELECT * FROM relationships WHERE child_id IN ({ids}) ORDER BY id",
            ids,
        )

    def get_edges_by_parent_ids(self, ids: Iterable[int]) -> list[ParentChildEdge]:
        return self._select_in(
            ParentChildEdge,
            "SELECT * FROM relationships WHERE parent_id IN ({ids}) ORDER BY id",
            ids,
        )

    def get_edge(self, edge_id: int) -> ParentChildEdge | None:
        return self._select_one(ParentChildEdge, "SELECT * FROM relationships WHERE id = ?", (edge_id,))

    def add_edge(self, values: dict[str, Any]) -> ParentChildEdge:
        new_id = self._insert("relationships", ParentChildEdge, values)
        logger.info(f"Added relationship {new_id}: {values.get('parent_id')} -> {values.get('child_id')}")
        return self.get_edge(new_id)

    def update_edge(self, edge_id: int, values: dict[str, Any]) -> ParentChildEdge:
        if not self._update("relationships", ParentChildEdge, edge_id, values):
            raise NotFoundError("relationship", edge_id)
        return self.get_edge(edge_id)

    def delete_edge(self, edge_id: int) -> bool:
        return self._delete("relationships", edge_id)

    # ------------------------------------------------------------------
    # Marriages
    # ------------------------------------------------------------------

    def list_marriages(self) -> list[Marriage]:
        return self._select(Marriage, "SELECT * FROM marriages ORDER BY id")

    def get_marriage(self, marriage_id: int) -> Marriage | None:
        return self._select_one(Marriage, "SELECT * FROM marriages WHERE id = ?", (marriage_id,))

    def get_marriages_for(self, individual_id: int) -> list[Marriage]:
        return self._select(
            Marriage,
            "SELECT * FROM marriages WHERE spouse1_id = ? OR spouse2_id = ? ORDER BY id",
            (individual_id, individual_id),
        )

    def add_marriage(self, values: dict[str, Any]) -> Marriage:
        new_id = self._insert("marriages", Marriage, values)
        logger.info(f"Added marriage {new_id}: {values.get('spouse1_id')} + {values.get('spouse2_id')}")
        return self.get_marriage(new_id)

    def update_marriage(self, marriage_id: int, values: dict[str, Any]) -> Marriage:
        if not self._update("marriages", Marriage, marriage_id, values):
            raise NotFoundError("marriage", marriage_id)
        return self.get_marriage(marriage_id)

    def delete_marriage(self, marriage_id: int) -> bool:
        return self._delete("marriages", marriage_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def list_events(self, individual_id: int | None = None) -> list[Event]:
        if individual_id is None:
            return self._select(Event, "SELECT * FROM events ORDER BY id")
        return self._select(
            Event,
            "SELECT * FROM events WHERE individual_id = ? ORDER BY event_date DESC, id",
            (individual_id,),
        )

    def get_event(self, event_id: int) -> Event | None:
        return self._select_one(Event, "SELECT * FROM events WHERE id = ?", (event_id,))

    def add_event(self, values: dict[str, Any]) -> Event:
        return self.get_event(self._insert("events", Event, values))

    def update_event(self, event_id: int, values: dict[str, Any]) -> Event:
        if not self._update("events", Event, event_id, values):
            raise NotFoundError("event", event_id)
        return self.get_event(event_id)

    def delete_event(self, event_id: int) -> bool:
        return self._delete("events", event_id)

    # ------------------------------------------------------------------
    # Sources and citations
    # ------------------------------------------------------------------

    def list_sources(self) -> list[Source]:
        return self._select(Source, "SELECT * FROM sources ORDER BY id")

    def get_source(self, source_id: int) -> Source | None:
        return self._select_one(Source, "SELECT * FROM sources WHERE id = ?", (source_id,))

    def add_source(self, values: dict[str, Any]) -> Source:
        return self.get_source(self._insert("sources", Source, values))

    def update_source(self, source_id: int, values: dict[str, Any]) -> Source:
        if not self._update("sources", Source, source_id, values):
            raise NotFoundError("source", source_id)
        return self.get_source(source_id)

    def delete_source(self, source_id: int) -> bool:
        with self._write("delete source") as conn:
            conn.execute("DELETE FROM individual_sources WHERE source_id = ?", (source_id,))
            cursor = conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        return cursor.rowcount > 0

    def list_citations(self) -> list[Citation]:
        return self._select(Citation, "SELECT * FROM individual_sources ORDER BY individual_id, source_id")

    def add_citation(self, values: dict[str, Any]) -> Citation:
        row = {k: v for k, v in values.items() if k in _columns(Citation)}
        row["created_at"] = row.get("created_at") or _now()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._write("cite source") as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO individual_sources ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
        return Citation.from_row(row)

    # ------------------------------------------------------------------
    # Media and media links
    # ------------------------------------------------------------------

    def list_media(self) -> list[Media]:
        return self._select(Media, "SELECT * FROM media ORDER BY id")

    def get_media(self, media_id: int) -> Media | None:
        return self._select_one(Media, "SELECT * FROM media WHERE id = ?", (media_id,))

    def add_media(self, values: dict[str, Any]) -> Media:
        row = dict(values)
        row["upload_date"] = row.get("upload_date") or _now()
        return self.get_media(self._insert("media", Media, row))

    def update_media(self, media_id: int, values: dict[str, Any]) -> Media:
        if not self._update("media", Media, media_id, values):
            raise NotFoundError("media", media_id)
        return self.get_media(media_id)

    def delete_media(self, media_id: int) -> bool:
        with self._write("delete media") as conn:
            conn.execute("DELETE FROM individual_media WHERE media_id = ?", (media_id,))
            cursor = conn.execute("DELETE FROM media WHERE id = ?", (media_id,))
        return cursor.rowcount > 0

    def list_media_links(self) -> list[MediaLink]:
        return self._select(MediaLink, "SELECT * FROM individual_media ORDER BY individual_id, media_id")

    def add_media_link(self, values: dict[str, Any]) -> MediaLink:
        row = {k: v for k, v in values.items() if k in _columns(MediaLink)}
        row.setdefault("relationship", "subject")
        row["created_at"] = row.get("created_at") or _now()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._write("link media") as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO individual_media ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
        return MediaLink.from_row(row)

    # ------------------------------------------------------------------
    # Whole-database operations
    # ------------------------------------------------------------------

    def clear_all(self) -> None:
        """Remove every row from every table in one transaction."""
        with self._write("clear_all") as conn:
            # Autocommit connections need an explicit transaction here
            if not conn.in_transaction:
                conn.execute("BEGIN")
            for table in ALL_TABLES:
                conn.execute(f"DELETE FROM {table}")
        logger.warning("Cleared all family tree data")
