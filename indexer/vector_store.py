"""Vector index for chunk embeddings.

``SQLiteVectorIndex`` keeps float32 vectors as BLOBs next to JSON metadata
and ranks them by cosine similarity with numpy. Vector ids are caller
supplied, so upserting the same id replaces the previous vector.
"""

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from services.shared.errors import DimensionMismatchError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class VectorMatch:
    """A query hit."""
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorRecord:
    """A stored vector with its metadata."""
    id: str
    values: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IndexStats:
    count: int
    dimension: int

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "dimension": self.dimension}


def matches_filter(metadata: Dict[str, Any], metadata_filter: Optional[Dict[str, Any]]) -> bool:
    """Evaluate an equality / ``$in`` filter against vector metadata."""
    if not metadata_filter:
        return True
    for key, condition in metadata_filter.items():
        value = metadata.get(key)
        if isinstance(condition, dict):
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$eq" in condition and value != condition["$eq"]:
                return False
            if "$ne" in condition and value == condition["$ne"]:
                return False
        elif value != condition:
            return False
    return True


class VectorIndex(ABC):
    """Stores vectors by id and answers nearest-neighbour queries."""

    def __init__(self, dimension: int = 768):
        self.dimension = dimension

    async def open(self) -> None:
        """Connect to the index."""

    async def close(self) -> None:
        """Release the connection."""

    def _check_dimension(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(vector))

    @abstractmethod
    async def upsert(self, vector_id: str, vector: Sequence[float],
                     metadata: Optional[Dict[str, Any]] = None) -> None:
        """Insert or replace one vector."""

    @abstractmethod
    async def query(self, vector: Sequence[float], top_k: int = 5,
                    metadata_filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        """Return up to ``top_k`` matches ranked by descending similarity."""

    @abstractmethod
    async def fetch(self, ids: Iterable[str]) -> List[VectorRecord]:
        """Return the stored records for ``ids`` that exist."""

    @abstractmethod
    async def delete(self, ids: Iterable[str]) -> int:
        """Delete vectors by id; returns how many existed."""

    @abstractmethod
    async def list_ids(self) -> List[str]:
        """All vector ids in the index."""

    @abstractmethod
    async def delete_all(self) -> int:
        """Remove every vector; returns how many were removed."""

    @abstractmethod
    async def stats(self) -> IndexStats:
        """Vector count and dimension."""


class SQLiteVectorIndex(VectorIndex):
    """Vector index in a SQLite file, scored in memory with numpy."""

    def __init__(self, path: str = "data/vectors.db", name: str = "docs", dimension: int = 768):
        super().__init__(dimension=dimension)
        if not name.replace("_", "").isalnum():
            raise ValueError(f"Invalid index name: {name!r}")
        self.path = path
        self.name = name
        self.table = f"vectors_{name}"
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        """Open the SQLite file and ensure the table exists."""
        if self.conn is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id TEXT PRIMARY KEY,
                dimension INTEGER NOT NULL,
                vector BLOB NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{{}}',
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self.conn.commit()
        logger.info(f"Vector index '{self.name}' opened: {self.path}")

    async def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info(f"Vector index '{self.name}' closed")

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("Vector index not opened. Call open() first.")
        return self.conn

    async def upsert(self, vector_id: str, vector: Sequence[float],
                     metadata: Optional[Dict[str, Any]] = None) -> None:
        self._check_dimension(vector)
        blob = np.asarray(vector, dtype=np.float32).tobytes()
        async with self._lock:
            conn = self._connection()
            conn.execute(
                f"""
                INSERT INTO {self.table} (id, dimension, vector, metadata, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    dimension = excluded.dimension,
                    vector = excluded.vector,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (vector_id, len(vector), blob, json.dumps(metadata or {}, default=str))
            )
            conn.commit()

    async def query(self, vector: Sequence[float], top_k: int = 5,
                    metadata_filter: Optional[Dict[str, Any]] = None) -> List[VectorMatch]:
        if top_k < 1:
            raise ValidationError("top_k must be at least 1")
        self._check_dimension(vector)

        async with self._lock:
            rows = self._connection().execute(
                f"SELECT id, vector, metadata FROM {self.table}"
            ).fetchall()

        candidates = []
        for row in rows:
            metadata = json.loads(row["metadata"])
            if matches_filter(metadata, metadata_filter):
                candidates.append((row["id"], row["vector"], metadata))
        if not candidates:
            return []

        matrix = np.vstack([np.frombuffer(blob, dtype=np.float32) for _, blob, _ in candidates])
        query_vec = np.asarray(vector, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query_vec / norms, 0.0)

        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            VectorMatch(id=candidates[i][0], score=float(scores[i]), metadata=candidates[i][2])
            for i in order
        ]

    async def fetch(self, ids: Iterable[str]) -> List[VectorRecord]:
        ids = list(ids)
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        async with self._lock:
            rows = self._connection().execute(
                f"SELECT id, vector, metadata FROM {self.table} WHERE id IN ({placeholders})",
                ids
            ).fetchall()
        return [
            VectorRecord(
                id=row["id"],
                values=np.frombuffer(row["vector"], dtype=np.float32).tolist(),
                metadata=json.loads(row["metadata"])
            )
            for row in rows
        ]

    async def delete(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        async with self._lock:
            conn = self._connection()
            cursor = conn.execute(f"DELETE FROM {self.table} WHERE id IN ({placeholders})", ids)
            conn.commit()
            return cursor.rowcount

    async def list_ids(self) -> List[str]:
        async with self._lock:
            rows = self._connection().execute(f"SELECT id FROM {self.table} ORDER BY id").fetchall()
        return [row["id"] for row in rows]

    async def delete_all(self) -> int:
        async with self._lock:
            conn = self._connection()
            cursor = conn.execute(f"DELETE FROM {self.table}")
            conn.commit()
            removed = cursor.rowcount
        logger.warning(f"Cleared vector index '{self.name}' ({removed} vectors)")
        return removed

    async def stats(self) -> IndexStats:
        async with self._lock:
            count = self._connection().execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]
        return IndexStats(count=count, dimension=self.dimension)
