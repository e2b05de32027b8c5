"""
Database schema for the chatbot similarity cache.

Each row is one answered question with its pgvector embedding and the response that
was returned for it. Response and metadata are stored as JSONB; the metadata
fields used for ordering and filtering are also kept in their own columns so
the working-set and eviction queries can use indexes.
"""

import logging
import psycopg2
from psycopg2 import sql

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_cache_schema(conn, table_name: str = 'chatbot_embeddings'):
    """
    Creates the cache table and its indexes if they do not already exist.

    Args:
        conn (psycopg2.connection): Database connection.
        table_name (str): Name of the cache table.

    Returns:
        bool: True on success, False if any statement failed.
    """
    table = sql.Identifier(table_name)

    create_table = sql.SQL("""
    CREATE TABLE IF NOT EXISTS {table} (
        id SERIAL PRIMARY KEY,
        question TEXT NOT NULL,
        -- Untyped so entries from embedding models of different sizes can coexist
        embedding vector NOT NULL,
        response JSONB NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,

        -- Denormalised from metadata for ordering and scope filters
        kind VARCHAR(50) NOT NULL DEFAULT 'room-search-query',
        source_of_answer VARCHAR(50) NOT NULL DEFAULT 'rules',
        usage_count INTEGER NOT NULL DEFAULT 1 CHECK (usage_count >= 0),
        last_used_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        verified BOOLEAN NOT NULL DEFAULT FALSE,

        is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
    );
    """).format(table=table)

    # Working set: most used first, newest first
    create_working_set_index = sql.SQL("""
    CREATE INDEX IF NOT EXISTS {name} ON {table} (usage_count DESC, created_at DESC)
    WHERE is_deleted = FALSE;
    """).format(name=sql.Identifier(f"idx_{table_name}_working_set"), table=table)

    # Eviction: least used first, oldest use first
    create_eviction_index = sql.SQL("""
    CREATE INDEX IF NOT EXISTS {name} ON {table} (usage_count ASC, last_used_at ASC)
    WHERE is_deleted = FALSE;
    """).format(name=sql.Identifier(f"idx_{table_name}_eviction"), table=table)

    create_scope_index = sql.SQL("""
    CREATE INDEX IF NOT EXISTS {name} ON {table} (kind, source_of_answer, verified);
    """).format(name=sql.Identifier(f"idx_{table_name}_scope"), table=table)

    try:
        with conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS vector;")
            cur.execute(create_table)
            cur.execute(create_working_set_index)
            cur.execute(create_eviction_index)
            cur.execute(create_scope_index)
        conn.commit()
        logger.info(f"'{table_name}' cache table created or already exists.")
        return True
    except psycopg2.Error as e:
        logger.error(f"Error creating cache schema: {e}", exc_info=True)
        conn.rollback()
        return False


if __name__ == '__main__':
    from core.database import get_db_connection

    connection = get_db_connection()
    if connection:
        create_cache_schema(connection)
        connection.close()
    else:
        print("Failed to connect to the database.")
