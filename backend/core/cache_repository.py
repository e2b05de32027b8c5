"""
Persistence boundary for the similarity cache.

Two implementations share one interface:
    - PostgresCacheRepository: psycopg2 against the `chatbot_embeddings` table
    - InMemoryCacheRepository: process-local dict, used by tests and as the
      degraded backend when the database is unreachable

Usage:
    from core.cache_repository import create_cache_repository

    repo = create_cache_repository()
    entries = repo.list_working_set(limit=200)
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json

from core.config import CACHE_BACKEND, CACHE_TABLE_NAME
from core.models import CacheEntry, CacheMetadata, utcnow

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Metadata fields mirrored into their own columns in Postgres
COLUMN_FIELDS = ('kind', 'source_of_answer', 'usage_count', 'last_used_at', 'verified')


def to_vector_literal(values: Iterable[float]) -> str:
    """pgvector text format: '[0.1,0.2,...]'."""
    return '[' + ','.join(map(str, values)) + ']'


def parse_vector(value) -> List[float]:
    """A pgvector column comes back as '[0.1,0.2]' text unless an adapter is registered."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.strip().strip('[]')
        return [float(v) for v in value.split(',')] if value else []
    return [float(v) for v in value]


class CacheRepository:
    """
    Storage interface used by SimilarityCacheService.

    Implementations may raise their driver's exceptions; the cache service
    treats any failure as a miss.
    """

    # True when nearest() scores similarity in the store itself
    supports_vector_search = False

    def count_active(self) -> int:
        raise NotImplementedError

    def nearest(
        self,
        query_vector: List[float],
        scan_limit: int,
        threshold: float
    ) -> Optional[Tuple[CacheEntry, float]]:
        """Best working-set entry of the same dimension at or above threshold, with its cosine similarity."""
        raise NotImplementedError

    def list_working_set(self, limit: int) -> List[CacheEntry]:
        """Non-deleted entries, most used first, newest first."""
        raise NotImplementedError

    def get(self, entry_id: str, include_deleted: bool = False) -> Optional[CacheEntry]:
        raise NotImplementedError

    def insert(self, entry: CacheEntry) -> CacheEntry:
        raise NotImplementedError

    def update(self, entry: CacheEntry) -> CacheEntry:
        raise NotImplementedError

    def increment_usage(self, entry_id: str, similarity: Optional[float] = None) -> bool:
        raise NotImplementedError

    def find_by_scope(
        self,
        kind: Optional[str] = None,
        source: Optional[str] = None,
        verified: Optional[bool] = None,
        include_deleted: bool = False
    ) -> List[CacheEntry]:
        raise NotImplementedError

    def eviction_candidates(self, limit: int) -> List[CacheEntry]:
        """Non-deleted entries, least used first, oldest use first."""
        raise NotImplementedError

    def soft_delete(self, entry_ids: Iterable[str]) -> int:
        raise NotImplementedError

    def update_many(self, entry_ids: Iterable[str], **fields) -> int:
        """Set metadata fields on several entries at once."""
        raise NotImplementedError

    def list_all(self, include_deleted: bool = True) -> List[CacheEntry]:
        raise NotImplementedError


class InMemoryCacheRepository(CacheRepository):
    """Dict-backed repository. Entries are copied on the way in and out."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def count_active(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries.values() if not e.is_deleted)

    def list_working_set(self, limit: int) -> List[CacheEntry]:
        with self._lock:
            active = [e for e in self._entries.values() if not e.is_deleted]
        active.sort(key=lambda e: (e.metadata.usage_count, e.created_at), reverse=True)
        return [e.model_copy(deep=True) for e in active[:limit]]

    def get(self, entry_id: str, include_deleted: bool = False) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(str(entry_id))
        if entry is None or (entry.is_deleted and not include_deleted):
            return None
        return entry.model_copy(deep=True)

    def insert(self, entry: CacheEntry) -> CacheEntry:
        with self._lock:
            stored = entry.model_copy(deep=True)
            stored.id = str(self._next_id)
            self._next_id += 1
            self._entries[stored.id] = stored
        return stored.model_copy(deep=True)

    def update(self, entry: CacheEntry) -> CacheEntry:
        with self._lock:
            if entry.id not in self._entries:
                raise KeyError(f"cache entry {entry.id} does not exist")
            stored = entry.model_copy(deep=True)
            stored.updated_at = utcnow()
            self._entries[stored.id] = stored
        return stored.model_copy(deep=True)

    def increment_usage(self, entry_id: str, similarity: Optional[float] = None) -> bool:
        with self._lock:
            entry = self._entries.get(str(entry_id))
            if entry is None or entry.is_deleted:
                return False
            entry.metadata.usage_count += 1
            entry.metadata.last_used_at = utcnow()
            if similarity is not None:
                entry.metadata.last_similarity = similarity
            return True

    def find_by_scope(self, kind=None, source=None, verified=None, include_deleted=False) -> List[CacheEntry]:
        with self._lock:
            entries = list(self._entries.values())
        matches = []
        for entry in entries:
            if entry.is_deleted and not include_deleted:
                continue
            if kind is not None and entry.metadata.kind != kind:
                continue
            if source is not None and entry.metadata.source_of_answer != source:
                continue
            if verified is not None and entry.metadata.verified != verified:
                continue
            matches.append(entry.model_copy(deep=True))
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches

    def eviction_candidates(self, limit: int) -> List[CacheEntry]:
        with self._lock:
            active = [e for e in self._entries.values() if not e.is_deleted]
        active.sort(key=lambda e: (e.metadata.usage_count, e.metadata.last_used_at))
        return [e.model_copy(deep=True) for e in active[:limit]]

    def soft_delete(self, entry_ids: Iterable[str]) -> int:
        deleted = 0
        with self._lock:
            for entry_id in entry_ids:
                entry = self._entries.get(str(entry_id))
                if entry is not None and not entry.is_deleted:
                    entry.is_deleted = True
                    entry.updated_at = utcnow()
                    deleted += 1
        return deleted

    def update_many(self, entry_ids: Iterable[str], **fields) -> int:
        updated = 0
        with self._lock:
            for entry_id in entry_ids:
                entry = self._entries.get(str(entry_id))
                if entry is None:
                    continue
                data = entry.metadata.model_dump()
                data.update(fields)
                entry.metadata = CacheMetadata.model_validate(data)
                entry.updated_at = utcnow()
                updated += 1
        return updated

    def list_all(self, include_deleted: bool = True) -> List[CacheEntry]:
        with self._lock:
            entries = list(self._entries.values())
        return [e.model_copy(deep=True) for e in entries if include_deleted or not e.is_deleted]


class PostgresCacheRepository(CacheRepository):
    """
    psycopg2-backed repository.

    Statements run under a lock because request handling and background
    write-back share one connection. Failed statements roll back and re-raise.
    """

    supports_vector_search = True

    SELECT_COLUMNS = """
        id, question, embedding, response, metadata, kind, source_of_answer,
        usage_count, last_used_at, verified, is_deleted, created_at, updated_at
    """

    def __init__(self, db_connection, table_name: str = CACHE_TABLE_NAME):
        """
        Args:
            db_connection: psycopg2 connection
            table_name: Name of the cache table (see core.schema)
        """
        self.conn = db_connection
        self.table = sql.Identifier(table_name)
        self._lock = threading.Lock()

    def _execute(self, query, params=(), fetch: str = None):
        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(query, params)
                    if fetch == 'one':
                        result = cur.fetchone()
                    elif fetch == 'all':
                        result = cur.fetchall()
                    else:
                        result = cur.rowcount
                self.conn.commit()
                return result
            except psycopg2.Error as e:
                logger.error(f"Cache repository query failed: {e}")
                self.conn.rollback()
                raise

    def _select(self, where: str = "", order: str = "", limit: Optional[int] = None):
        query = sql.SQL("SELECT " + self.SELECT_COLUMNS + " FROM {table}").format(table=self.table)
        if where:
            query += sql.SQL(" WHERE " + where)
        if order:
            query += sql.SQL(" ORDER BY " + order)
        if limit is not None:
            query += sql.SQL(" LIMIT %(limit)s")
        return query

    @staticmethod
    def _to_pk(entry_id) -> Optional[int]:
        try:
            return int(entry_id)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _row_to_entry(row) -> CacheEntry:
        (entry_id, question, embedding, response, metadata, kind, source,
         usage_count, last_used_at, verified, is_deleted, created_at, updated_at) = row

        metadata = dict(metadata or {})
        metadata.update({
            'kind': kind,
            'source_of_answer': source,
            'usage_count': usage_count,
            'verified': verified,
        })
        if last_used_at is not None:
            metadata['last_used_at'] = last_used_at

        return CacheEntry.model_validate({
            'id': str(entry_id),
            'question': question,
            'embedding': parse_vector(embedding),
            'response': response,
            'metadata': metadata,
            'is_deleted': is_deleted,
            'created_at': created_at,
            'updated_at': updated_at,
        })

    @staticmethod
    def _entry_params(entry: CacheEntry) -> Dict[str, Any]:
        meta = entry.metadata
        return {
            'question': entry.question,
            'embedding': to_vector_literal(entry.embedding),
            'response': Json(entry.response.model_dump(mode='json')),
            'metadata': Json(meta.model_dump(mode='json')),
            'kind': meta.kind.value,
            'source_of_answer': meta.source_of_answer.value,
            'usage_count': meta.usage_count,
            'last_used_at': meta.last_used_at,
            'verified': meta.verified,
            'is_deleted': entry.is_deleted,
        }

    def count_active(self) -> int:
        query = sql.SQL("SELECT COUNT(*) FROM {table} WHERE is_deleted = FALSE").format(table=self.table)
        row = self._execute(query, fetch='one')
        return row[0] if row else 0

    def nearest(
        self,
        query_vector: List[float],
        scan_limit: int,
        threshold: float
    ) -> Optional[Tuple[CacheEntry, float]]:
        """
        Cosine top-1 computed by pgvector over the working set.

        Rows of another dimension get a NULL similarity and never match;
        <=> is only evaluated on vectors of the query's dimension.
        """
        query = sql.SQL("""
            SELECT """ + self.SELECT_COLUMNS + """, similarity
            FROM (
                SELECT *,
                       CASE WHEN vector_dims(embedding) = %(dims)s
                            THEN 1 - (embedding <=> %(vector)s::vector)
                       END AS similarity
                FROM (
                    SELECT """ + self.SELECT_COLUMNS + """
                    FROM {table}
                    WHERE is_deleted = FALSE
                    ORDER BY usage_count DESC, created_at DESC
                    LIMIT %(limit)s
                ) AS working_set
            ) AS scored
            WHERE similarity >= %(threshold)s AND similarity <> 'NaN'::float8
            ORDER BY similarity DESC, usage_count DESC, created_at DESC
            LIMIT 1
        """).format(table=self.table)
        params = {
            'vector': to_vector_literal(query_vector),
            'dims': len(query_vector),
            'limit': scan_limit,
            'threshold': threshold,
        }
        row = self._execute(query, params, fetch='one')
        if row is None:
            return None
        return self._row_to_entry(row[:-1]), float(row[-1])

    def list_working_set(self, limit: int) -> List[CacheEntry]:
        query = self._select("is_deleted = FALSE", "usage_count DESC, created_at DESC", limit)
        rows = self._execute(query, {'limit': limit}, fetch='all')
        return [self._row_to_entry(row) for row in rows]

    def get(self, entry_id: str, include_deleted: bool = False) -> Optional[CacheEntry]:
        pk = self._to_pk(entry_id)
        if pk is None:
            return None
        where = "id = %(id)s" if include_deleted else "id = %(id)s AND is_deleted = FALSE"
        row = self._execute(self._select(where), {'id': pk}, fetch='one')
        return self._row_to_entry(row) if row else None

    def insert(self, entry: CacheEntry) -> CacheEntry:
        query = sql.SQL("""
            INSERT INTO {table}
            (question, embedding, response, metadata, kind, source_of_answer,
             usage_count, last_used_at, verified, is_deleted)
            VALUES (%(question)s, %(embedding)s::vector, %(response)s, %(metadata)s, %(kind)s,
                    %(source_of_answer)s, %(usage_count)s, %(last_used_at)s, %(verified)s,
                    %(is_deleted)s)
            RETURNING
        """ + self.SELECT_COLUMNS).format(table=self.table)
        row = self._execute(query, self._entry_params(entry), fetch='one')
        return self._row_to_entry(row)

    def update(self, entry: CacheEntry) -> CacheEntry:
        pk = self._to_pk(entry.id)
        if pk is None:
            raise KeyError(f"cache entry {entry.id} does not exist")
        query = sql.SQL("""
            UPDATE {table}
            SET question = %(question)s,
                embedding = %(embedding)s::vector,
                response = %(response)s,
                metadata = %(metadata)s,
                kind = %(kind)s,
                source_of_answer = %(source_of_answer)s,
                usage_count = %(usage_count)s,
                last_used_at = %(last_used_at)s,
                verified = %(verified)s,
                is_deleted = %(is_deleted)s,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = %(id)s
            RETURNING
        """ + self.SELECT_COLUMNS).format(table=self.table)
        params = self._entry_params(entry)
        params['id'] = pk
        row = self._execute(query, params, fetch='one')
        if row is None:
            raise KeyError(f"cache entry {entry.id} does not exist")
        return self._row_to_entry(row)

    def increment_usage(self, entry_id: str, similarity: Optional[float] = None) -> bool:
        pk = self._to_pk(entry_id)
        if pk is None:
            return False
        extra = {'last_similarity': similarity} if similarity is not None else {}
        query = sql.SQL("""
            UPDATE {table}
            SET usage_count = usage_count + 1,
                last_used_at = CURRENT_TIMESTAMP,
                metadata = metadata || %(extra)s::jsonb
            WHERE id = %(id)s AND is_deleted = FALSE
        """).format(table=self.table)
        return self._execute(query, {'id': pk, 'extra': Json(extra)}) > 0

    def find_by_scope(self, kind=None, source=None, verified=None, include_deleted=False) -> List[CacheEntry]:
        clauses = []
        params: Dict[str, Any] = {}
        if not include_deleted:
            clauses.append("is_deleted = FALSE")
        if kind is not None:
            clauses.append("kind = %(kind)s")
            params['kind'] = getattr(kind, 'value', kind)
        if source is not None:
            clauses.append("source_of_answer = %(source)s")
            params['source'] = getattr(source, 'value', source)
        if verified is not None:
            clauses.append("verified = %(verified)s")
            params['verified'] = verified
        query = self._select(" AND ".join(clauses), "created_at DESC")
        rows = self._execute(query, params, fetch='all')
        return [self._row_to_entry(row) for row in rows]

    def eviction_candidates(self, limit: int) -> List[CacheEntry]:
        query = self._select("is_deleted = FALSE", "usage_count ASC, last_used_at ASC", limit)
        rows = self._execute(query, {'limit': limit}, fetch='all')
        return [self._row_to_entry(row) for row in rows]

    def soft_delete(self, entry_ids: Iterable[str]) -> int:
        pks = [pk for pk in (self._to_pk(i) for i in entry_ids) if pk is not None]
        if not pks:
            return 0
        query = sql.SQL("""
            UPDATE {table}
            SET is_deleted = TRUE, updated_at = CURRENT_TIMESTAMP
            WHERE id = ANY(%(ids)s) AND is_deleted = FALSE
        """).format(table=self.table)
        return self._execute(query, {'ids': pks})

    def update_many(self, entry_ids: Iterable[str], **fields) -> int:
        pks = [pk for pk in (self._to_pk(i) for i in entry_ids) if pk is not None]
        if not pks or not fields:
            return 0

        json_fields = CacheMetadata(**fields).model_dump(mode='json', include=set(fields))

        assignments = [sql.SQL("metadata = metadata || %(patch)s::jsonb"),
                       sql.SQL("updated_at = CURRENT_TIMESTAMP")]
        params: Dict[str, Any] = {'ids': pks, 'patch': Json(json_fields)}
        for name in COLUMN_FIELDS:
            if name in fields:
                assignments.append(sql.SQL("{col} = %({col_param})s").format(
                    col=sql.Identifier(name), col_param=sql.SQL(name)))
                value = fields[name]
                params[name] = getattr(value, 'value', value)

        query = sql.SQL("UPDATE {table} SET {assignments} WHERE id = ANY(%(ids)s)").format(
            table=self.table, assignments=sql.SQL(", ").join(assignments))
        return self._execute(query, params)

    def list_all(self, include_deleted: bool = True) -> List[CacheEntry]:
        where = "" if include_deleted else "is_deleted = FALSE"
        rows = self._execute(self._select(where, "created_at DESC"), {}, fetch='all')
        return [self._row_to_entry(row) for row in rows]


def create_cache_repository(backend: str = None) -> CacheRepository:
    """
    Build the repository selected by CACHE_BACKEND.

    Falls back to the in-memory repository when Postgres is unreachable so the
    assistant keeps answering (without cross-process cache sharing).
    """
    backend = backend or CACHE_BACKEND
    if backend == 'memory':
        logger.info("Using in-memory cache repository")
        return InMemoryCacheRepository()

    from core.database import get_db_connection
    from core.schema import create_cache_schema

    conn = get_db_connection()
    if conn is None:
        logger.warning("Database unavailable, falling back to in-memory cache repository")
        return InMemoryCacheRepository()

    create_cache_schema(conn, CACHE_TABLE_NAME)
    logger.info(f"Using Postgres cache repository (table '{CACHE_TABLE_NAME}')")
    return PostgresCacheRepository(conn, CACHE_TABLE_NAME)
