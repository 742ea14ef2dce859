"""
Migration Runner
Executes SQL schema and migration files against the database
"""
import logging
import sys
from pathlib import Path

import database as db

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = Path(__file__).with_name('schema.sql')


def run_migration(sql_file):
    """Run a SQL file against the database in a single transaction"""
    sql_path = Path(sql_file)
    if not sql_path.exists():
        logger.error(f"Migration file not found: {sql_file}")
        return False

    sql = sql_path.read_text(encoding='utf-8')

    conn = db.get_connection()
    if not conn:
        logger.error("Could not connect to database")
        return False

    try:
        with conn.cursor() as cursor:
            cursor.execute(sql)
        conn.commit()
        logger.info(f"Migration successful: {sql_file}")
        return True
    except db.psycopg2.Error as e:
        conn.rollback()
        logger.error(f"Migration failed: {e}")
        return False
    finally:
        conn.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(message)s')
    migration_file = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_SCHEMA
    logger.info(f"Running migration: {migration_file}")
    success = run_migration(migration_file)
    sys.exit(0 if success else 1)
