"""
Database Module
Handles all database connections and operations for launch scheduling,
winner detection and yearly archives
"""
import os
import logging
import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extras import RealDictCursor
from config import Config

# Configure logging - never log sensitive data like passwords or connection strings
logger = logging.getLogger(__name__)

# First key of the two-int advisory locks taken by this module
LAUNCH_WEEK_LOCK_NAMESPACE = 7301
WINNER_FLAG_LOCK_NAMESPACE = 7302

WINNER_FLAG_COLUMNS = ('won_daily', 'won_weekly', 'won_monthly')


class DatastoreError(Exception):
    """Raised when a query or connection fails; the transaction has been rolled back."""


class ProductConflict(Exception):
    """The owner already has a non-draft product with this slug."""


def get_connection():
    """Create and return a database connection"""
    try:
        # Check if DATABASE_URL is set (Dokploy/Heroku style)
        database_url = os.environ.get('DATABASE_URL')

        if database_url:
            # Some providers use postgres:// but psycopg2 needs postgresql://
            if database_url.startswith('postgres://'):
                database_url = database_url.replace('postgres://', 'postgresql://', 1)
            conn = psycopg2.connect(database_url, sslmode=Config.DB_SSL_MODE)
        else:
            conn = psycopg2.connect(
                host=Config.DB_HOST,
                port=Config.DB_PORT,
                database=Config.DB_NAME,
                user=Config.DB_USER,
                password=Config.DB_PASSWORD,
                sslmode=Config.DB_SSL_MODE
            )
        return conn
    except psycopg2.Error as e:
        # Log error without exposing connection details
        logger.error(f'Database connection failed: {type(e).__name__}')
        return None


def _connect():
    connection = get_connection()
    if not connection:
        raise DatastoreError('Database connection failed')
    return connection


def _rollback_quietly(connection):
    try:
        connection.rollback()
    except psycopg2.Error:
        logger.warning('Rollback failed after database error')


# ============== Capacity ==============

def count_launches_in_range(start, end):
    """
    Count products holding a launch date in [start, end).

    Only scheduled or launched products hold a launch date, so drafts
    never consume capacity.
    """
    connection = _connect()
    try:
        with connection.cursor() as cursor:
            cursor.execute("""
                SELECT COUNT(*) FROM products
                WHERE status IN ('scheduled', 'launched')
                  AND launch_date >= %s
                  AND launch_date < %s
            """, (start, end))
            return cursor.fetchone()[0]
    except psycopg2.Error as e:
        logger.error(f"Error counting launches between {start} and {end}: {e}")
        raise DatastoreError('Could not count launches') from e
    finally:
        connection.close()


# ============== Products & Orders ==============

def get_draft_product(slug, owner_id):
    """Fetch the owner's draft product with this slug, if any"""
    connection = _connect()
    try:
        with connection.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT product_id, slug, owner_id, status, launch_date
                FROM products
                WHERE slug = %s AND owner_id = %s AND status = 'draft'
            """, (slug, owner_id))
            return cursor.fetchone()
    except psycopg2.Error as e:
        logger.error(f"Error fetching draft product {slug}: {e}")
        raise DatastoreError('Could not fetch draft product') from e
    finally:
        connection.close()


def get_order_by_session_id(stripe_session_id):
    """Fetch the order recorded for a checkout session, if any"""
    connection = _connect()
    try:
        with connection.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT order_id, user_id, product_id, plan, stripe_session_id,
                       status, launch_date, fulfilled_at
                FROM orders
                WHERE stripe_session_id = %s
            """, (stripe_session_id,))
            return cursor.fetchone()
    except psycopg2.Error as e:
        logger.error(f"Error fetching order for session {stripe_session_id}: {e}")
        raise DatastoreError('Could not fetch order') from e
    finally:
        connection.close()


def record_order(user_id, plan, stripe_session_id, status, product_id=None, launch_date=None):
    """
    Insert an order row outside of a booking.

    Used when no slot could be booked so the paid order is still on record
    for manual handling. Returns the order_id, or None if the session was
    already recorded.
    """
    connection = _connect()
    try:
        with connection.cursor() as cursor:
            cursor.execute("""
                INSERT INTO orders (user_id, product_id, plan, stripe_session_id,
                                    status, launch_date, fulfilled_at)
                VALUES (%s, %s, %s, %s, %s, %s, CURRENT_TIMESTAMP)
                ON CONFLICT (stripe_session_id) DO NOTHING
                RETURNING order_id
            """, (user_id, product_id, plan, stripe_session_id, status, launch_date))
            row = cursor.fetchone()
            connection.commit()
            return row[0] if row else None
    except psycopg2.Error as e:
        _rollback_quietly(connection)
        logger.error(f"Error recording order for session {stripe_session_id}: {e}")
        raise DatastoreError('Could not record order') from e
    finally:
        connection.close()


def _insert_product_assets(cursor, product_id, categories, media):
    for category_id in categories:
        cursor.execute("""
            INSERT INTO product_categories (product_id, category_id)
            VALUES (%s, %s)
            ON CONFLICT DO NOTHING
        """, (product_id, category_id))

    rows = []
    if media.get('icon'):
        rows.append(('icon', media['icon'], 0))
    if media.get('thumbnail'):
        rows.append(('thumbnail', media['thumbnail'], 0))
    for position, url in enumerate(media.get('screenshots') or []):
        rows.append(('screenshot', url, position))
    for media_type, url, sort_order in rows:
        cursor.execute("""
            INSERT INTO product_media (product_id, media_type, url, sort_order)
            VALUES (%s, %s, %s, %s)
        """, (product_id, media_type, url, sort_order))


def reserve_launch_slot(order, launch_date, status, week_start=None, week_end=None, capacity=None):
    """
    Book a launch slot and write the product and order in one transaction.

    When capacity is given, the week is locked with a transaction-scoped
    advisory lock and its launch count is re-read under the lock, so two
    concurrent bookings can never both take the last slot of a week.

    Args:
        order: OrderFulfilled being processed
        launch_date: aware datetime to assign
        status: 'scheduled' or 'launched'
        week_start, week_end: capacity window containing launch_date
        capacity: max launches in the window, or None to skip the check

    Returns:
        None if the week filled up before the lock was acquired, otherwise a
        dict with product_id, order_id, created and duplicate keys.

    Raises:
        ProductConflict: the owner has a non-draft product with this slug
    """
    connection = _connect()
    try:
        with connection.cursor() as cursor:
            if capacity is not None:
                cursor.execute(
                    "SELECT pg_advisory_xact_lock(%s, %s)",
                    (LAUNCH_WEEK_LOCK_NAMESPACE, week_start.date().toordinal())
                )
                cursor.execute("""
                    SELECT COUNT(*) FROM products
                    WHERE status IN ('scheduled', 'launched')
                      AND launch_date >= %s
                      AND launch_date < %s
                """, (week_start, week_end))
                if cursor.fetchone()[0] >= capacity:
                    connection.rollback()
                    return None

            cursor.execute("""
                INSERT INTO orders (user_id, plan, stripe_session_id, status,
                                    launch_date, fulfilled_at)
                VALUES (%s, %s, %s, 'fulfilled', %s, CURRENT_TIMESTAMP)
                ON CONFLICT (stripe_session_id) DO NOTHING
                RETURNING order_id
            """, (order.user_id, order.plan_tier, order.session_id, launch_date))
            order_row = cursor.fetchone()
            if not order_row:
                # Another delivery of the same session already booked
                connection.rollback()
                return {'product_id': None, 'order_id': None, 'created': False, 'duplicate': True}
            order_id = order_row[0]

            cursor.execute("""
                SELECT product_id FROM products
                WHERE slug = %s AND owner_id = %s AND status = 'draft'
                FOR UPDATE
            """, (order.product_slug, order.user_id))
            draft = cursor.fetchone()

            if draft:
                product_id = draft[0]
                cursor.execute("""
                    UPDATE products
                    SET name = %s, tagline = %s, description = %s, url = %s,
                        status = %s, launch_date = %s, plan = %s,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE product_id = %s
                """, (order.product_name, order.tagline, order.description,
                      order.domain_url, status, launch_date, order.plan_tier, product_id))
            else:
                cursor.execute("""
                    INSERT INTO products (slug, owner_id, name, tagline, description,
                                          url, status, launch_date, plan)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING product_id
                """, (order.product_slug, order.user_id, order.product_name,
                      order.tagline, order.description, order.domain_url,
                      status, launch_date, order.plan_tier))
                product_id = cursor.fetchone()[0]
                _insert_product_assets(cursor, product_id, order.categories, order.media)

            cursor.execute(
                "UPDATE orders SET product_id = %s WHERE order_id = %s",
                (product_id, order_id)
            )
            connection.commit()
            return {
                'product_id': str(product_id),
                'order_id': order_id,
                'created': draft is None,
                'duplicate': False,
            }
    except psycopg2.errors.UniqueViolation as e:
        _rollback_quietly(connection)
        logger.warning(f"Slug {order.product_slug} already taken by a non-draft product of {order.user_id}")
        raise ProductConflict(order.product_slug) from e
    except psycopg2.Error as e:
        _rollback_quietly(connection)
        logger.error(f"Error booking launch slot for session {order.session_id}: {e}")
        raise DatastoreError('Could not book launch slot') from e
    finally:
        connection.close()


def mark_due_products_launched(now):
    """Move scheduled products whose launch date has passed to launched"""
    connection = _connect()
    try:
        with connection.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                UPDATE products
                SET status = 'launched', updated_at = CURRENT_TIMESTAMP
                WHERE status = 'scheduled'
                  AND launch_date <= %s
                RETURNING product_id, name, slug, owner_id, launch_date
            """, (now,))
            rows = cursor.fetchall()
            connection.commit()
            return rows
    except psycopg2.Error as e:
        _rollback_quietly(connection)
        logger.error(f"Error launching due products: {e}")
        raise DatastoreError('Could not launch due products') from e
    finally:
        connection.close()


# ============== Rankings ==============

def get_launched_products_between(start, end):
    """Fetch launched products whose launch date falls in [start, end]"""
    connection = _connect()
    try:
        with connection.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT product_id::text AS product_id, status, launch_date
                FROM products
                WHERE status = 'launched'
                  AND launch_date >= %s
                  AND launch_date <= %s
            """, (start, end))
            return cursor.fetchall()
    except psycopg2.Error as e:
        logger.error(f"Error fetching launched products: {e}")
        raise DatastoreError('Could not fetch launched products') from e
    finally:
        connection.close()


def get_votes_for_products(product_ids):
    """Fetch (product_id, value) vote rows for the given products"""
    if not product_ids:
        return []
    connection = _connect()
    try:
        with connection.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT product_id::text AS product_id, value
                FROM votes
                WHERE product_id = ANY(%s::uuid[])
            """, (list(product_ids),))
            return cursor.fetchall()
    except psycopg2.Error as e:
        logger.error(f"Error fetching votes: {e}")
        raise DatastoreError('Could not fetch votes') from e
    finally:
        connection.close()


def set_winner_flag(column, product_id):
    """
    Make product_id the only product with the given winner flag set.

    Clearing the old winner and setting the new one commit together,
    serialized per flag with an advisory lock so overlapping runs cannot
    leave two winners. A product_id of None clears the flag.
    """
    if column not in WINNER_FLAG_COLUMNS:
        raise ValueError(f"Unknown winner flag: {column}")

    connection = _connect()
    try:
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT pg_advisory_xact_lock(%s, %s)",
                (WINNER_FLAG_LOCK_NAMESPACE, WINNER_FLAG_COLUMNS.index(column))
            )
            # column is whitelisted above
            cursor.execute(f"""
                UPDATE products SET {column} = FALSE
                WHERE {column} = TRUE
                  AND product_id IS DISTINCT FROM %s::uuid
            """, (product_id,))
            if product_id is not None:
                cursor.execute(f"""
                    UPDATE products SET {column} = TRUE
                    WHERE product_id = %s::uuid
                """, (product_id,))
            connection.commit()
    except psycopg2.Error as e:
        _rollback_quietly(connection)
        logger.error(f"Error setting {column}: {e}")
        raise DatastoreError(f'Could not set {column}') from e
    finally:
        connection.close()


def replace_archive_entries(year, period, entries):
    """
    Upsert the ranked archive rows for one (year, period).

    Rows on (year, period, product_id) are overwritten, and rows for
    products no longer in the ranked set are removed, so ranks stay 1..N.
    """
    connection = _connect()
    try:
        with connection.cursor() as cursor:
            psycopg2.extras.execute_values(cursor, """
                INSERT INTO product_archives (year, period, product_id, rank, net_votes)
                VALUES %s
                ON CONFLICT (year, period, product_id) DO UPDATE SET
                    rank = EXCLUDED.rank,
                    net_votes = EXCLUDED.net_votes,
                    archived_at = CURRENT_TIMESTAMP
            """, [(year, period, e.product_id, e.rank, e.net_votes) for e in entries])
            cursor.execute("""
                DELETE FROM product_archives
                WHERE year = %s AND period = %s
                  AND NOT (product_id = ANY(%s::uuid[]))
            """, (year, period, [e.product_id for e in entries]))
            connection.commit()
    except psycopg2.Error as e:
        _rollback_quietly(connection)
        logger.error(f"Error archiving {period} {year}: {e}")
        raise DatastoreError(f'Could not archive {period} {year}') from e
    finally:
        connection.close()


def get_archive_entries(year, period):
    """Get the archived ranking for one period, ordered by rank"""
    connection = _connect()
    try:
        with connection.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute("""
                SELECT year, period, product_id::text AS product_id, rank, net_votes
                FROM product_archives
                WHERE year = %s AND period = %s
                ORDER BY rank
            """, (year, period))
            return cursor.fetchall()
    except psycopg2.Error as e:
        logger.error(f"Error fetching archive {period} {year}: {e}")
        raise DatastoreError('Could not fetch archive') from e
    finally:
        connection.close()


# ============== Cron Job Logging ==============

def log_cron_start(job_type):
    """Log the start of a cron job and return the log ID"""
    connection = get_connection()
    if not connection:
        return None
    try:
        with connection.cursor() as cursor:
            cursor.execute("""
                INSERT INTO cron_logs (job_type, status, started_at)
                VALUES (%s, 'started', CURRENT_TIMESTAMP)
                RETURNING log_id
            """, (job_type,))
            log_id = cursor.fetchone()[0]
            connection.commit()
            return log_id
    except psycopg2.Error as e:
        logger.error(f"Failed to log cron start: {e}")
        return None
    finally:
        connection.close()


def log_cron_complete(log_id, details=None):
    """Log the completion of a cron job"""
    if not log_id:
        return
    connection = get_connection()
    if not connection:
        return
    try:
        with connection.cursor() as cursor:
            cursor.execute("""
                UPDATE cron_logs
                SET status = 'completed',
                    completed_at = CURRENT_TIMESTAMP,
                    duration_seconds = EXTRACT(EPOCH FROM (CURRENT_TIMESTAMP - started_at))::INTEGER,
                    details = %s
                WHERE log_id = %s
            """, (psycopg2.extras.Json(details) if details else None, log_id))
            connection.commit()
    except psycopg2.Error as e:
        logger.error(f"Failed to log cron completion: {e}")
    finally:
        connection.close()


def log_cron_failure(log_id, error_message):
    """Log the failure of a cron job"""
    if not log_id:
        return
    connection = get_connection()
    if not connection:
        return
    try:
        with connection.cursor() as cursor:
            cursor.execute("""
                UPDATE cron_logs
                SET status = 'failed',
                    completed_at = CURRENT_TIMESTAMP,
                    duration_seconds = EXTRACT(EPOCH FROM (CURRENT_TIMESTAMP - started_at))::INTEGER,
                    error_message = %s
                WHERE log_id = %s
            """, (error_message, log_id))
            connection.commit()
    except psycopg2.Error as e:
        logger.error(f"Failed to log cron failure: {e}")
    finally:
        connection.close()


def get_cron_logs(limit=50, job_type=None):
    """Get recent cron job execution logs"""
    connection = _connect()
    try:
        with connection.cursor(cursor_factory=RealDictCursor) as cursor:
            if job_type:
                cursor.execute("""
                    SELECT log_id, job_type, status, started_at, completed_at,
                           duration_seconds, error_message, details
                    FROM cron_logs
                    WHERE job_type = %s
                    ORDER BY started_at DESC
                    LIMIT %s
                """, (job_type, limit))
            else:
                cursor.execute("""
                    SELECT log_id, job_type, status, started_at, completed_at,
                           duration_seconds, error_message, details
                    FROM cron_logs
                    ORDER BY started_at DESC
                    LIMIT %s
                """, (limit,))
            return cursor.fetchall()
    except psycopg2.Error as e:
        logger.error(f"Failed to get cron logs: {e}")
        raise DatastoreError('Could not fetch cron logs') from e
    finally:
        connection.close()
