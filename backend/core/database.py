import logging
import psycopg2

from core.config import DATABASE_URL

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def get_db_connection(database_url: str = None, connect_timeout: int = 5):
    """
    Open a connection to the PostgreSQL database that stores the similarity cache.

    Args:
        database_url (str): libpq DSN or URL; defaults to DATABASE_URL.
        connect_timeout (int): Seconds to wait for the server before giving up.

    Returns:
        psycopg2.connection, or None when the server cannot be reached.
    """
    try:
        return psycopg2.connect(database_url or DATABASE_URL, connect_timeout=connect_timeout)
    except psycopg2.OperationalError as e:
        logger.error(f"Cache database unreachable: {e}", exc_info=True)
        return None


if __name__ == '__main__':
    conn = get_db_connection()
    if conn is None:
        print("✗ Cache database is not reachable")
    else:
        with conn.cursor() as cur:
            cur.execute("SELECT version();")
            print(f"✓ Connected: {cur.fetchone()[0]}")
        conn.close()
