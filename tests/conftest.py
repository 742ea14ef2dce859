"""
Test fixtures for launch scheduling, winner detection and archiving.

Most tests run against FakeDatastore, an in-memory stand-in for the
database module's query functions installed with monkeypatch.

PostgreSQL tests use the db_conn fixture, which monkeypatches
database.get_connection so every query runs inside a per-test transaction
that is rolled back afterwards. They are skipped when no test database is
reachable (TEST_DATABASE_URL, or DB_* env vars with TEST_DB_NAME).
"""
import os
import threading
import uuid
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
import psycopg2

import database
from config import Config
from launch_scheduler import OrderFulfilled

LA = ZoneInfo('America/Los_Angeles')


def get_test_connection():
    """Create a connection to the test database"""
    database_url = os.environ.get('TEST_DATABASE_URL')

    if database_url:
        if database_url.startswith('postgres://'):
            database_url = database_url.replace('postgres://', 'postgresql://', 1)
        return psycopg2.connect(database_url)

    # Fall back to individual env vars with test database name
    return psycopg2.connect(
        host=os.environ.get('DB_HOST', 'localhost'),
        port=os.environ.get('DB_PORT', '5432'),
        database=os.environ.get('TEST_DB_NAME', 'launch_directory_test'),
        user=os.environ.get('DB_USER', 'postgres'),
        password=os.environ.get('DB_PASSWORD', ''),
        connect_timeout=3,
    )


@pytest.fixture(autouse=True)
def launch_settings(monkeypatch):
    """Pin scheduling settings so tests do not depend on the environment"""
    monkeypatch.setattr(Config, 'LAUNCH_TIMEZONE', 'America/Los_Angeles')
    monkeypatch.setattr(Config, 'LAUNCH_CAPACITY_PER_WEEK', 1)
    monkeypatch.setattr(Config, 'LAUNCH_SEARCH_MAX_ATTEMPTS', 365)
    monkeypatch.setattr(Config, 'ARCHIVE_TOP_N', 100)


# ============== In-memory datastore ==============

class FakeDatastore:
    """
    In-memory replacement for the database module's query functions.

    reserve_launch_slot holds a lock for the whole check-and-write, the way
    the advisory lock serializes bookings in PostgreSQL, and raises
    ProductConflict where the (owner_id, slug) unique constraint would fire. Tests can make any
    function raise DatastoreError through fail_when.
    """

    FUNCTIONS = (
        'count_launches_in_range', 'get_draft_product', 'get_order_by_session_id',
        'record_order', 'reserve_launch_slot', 'mark_due_products_launched',
        'get_launched_products_between', 'get_votes_for_products', 'set_winner_flag',
        'replace_archive_entries', 'get_archive_entries',
        'log_cron_start', 'log_cron_complete', 'log_cron_failure',
    )

    def __init__(self):
        self.products = {}
        self.orders = []
        self.votes = []
        self.media = []
        self.categories = []
        self.archives = {}
        self.cron_logs = {}
        self.fail_when = {}
        self.calls = []
        self._lock = threading.Lock()

    def install(self, monkeypatch):
        for name in self.FUNCTIONS:
            monkeypatch.setattr(database, name, getattr(self, name))
        return self

    def _maybe_fail(self, name, *args):
        self.calls.append(name)
        predicate = self.fail_when.get(name)
        if predicate and predicate(*args):
            raise database.DatastoreError(f'{name} failed')

    # ---- seeding helpers ----

    def add_product(self, status='launched', launch_date=None, votes=0, slug=None,
                    owner_id=None, **extra):
        product_id = str(uuid.uuid4())
        self.products[product_id] = {
            'product_id': product_id,
            'slug': slug or f'product-{len(self.products) + 1}',
            'owner_id': owner_id or str(uuid.uuid4()),
            'status': status,
            'launch_date': launch_date,
            'won_daily': False,
            'won_weekly': False,
            'won_monthly': False,
            **extra,
        }
        self.add_votes(product_id, votes)
        return product_id

    def add_votes(self, product_id, count, value=1):
        for _ in range(count):
            self.votes.append({'product_id': product_id, 'value': value})

    def flagged(self, column):
        return [p['product_id'] for p in self.products.values() if p[column]]

    def launches_between(self, start, end):
        return [
            p for p in self.products.values()
            if p['status'] in ('scheduled', 'launched')
            and p['launch_date'] is not None
            and start <= p['launch_date'] < end
        ]

    # ---- database module API ----

    def count_launches_in_range(self, start, end):
        self._maybe_fail('count_launches_in_range', start, end)
        with self._lock:
            return len(self.launches_between(start, end))

    def get_draft_product(self, slug, owner_id):
        self._maybe_fail('get_draft_product', slug, owner_id)
        for p in self.products.values():
            if p['slug'] == slug and p['owner_id'] == owner_id and p['status'] == 'draft':
                return dict(p)
        return None

    def get_order_by_session_id(self, stripe_session_id):
        self._maybe_fail('get_order_by_session_id', stripe_session_id)
        for order in self.orders:
            if order['stripe_session_id'] == stripe_session_id:
                return dict(order)
        return None

    def record_order(self, user_id, plan, stripe_session_id, status, product_id=None, launch_date=None):
        self._maybe_fail('record_order', user_id, plan, stripe_session_id, status)
        with self._lock:
            if any(o['stripe_session_id'] == stripe_session_id for o in self.orders):
                return None
            order_id = len(self.orders) + 1
            self.orders.append({
                'order_id': order_id, 'user_id': user_id, 'product_id': product_id,
                'plan': plan, 'stripe_session_id': stripe_session_id,
                'status': status, 'launch_date': launch_date,
            })
            return order_id

    def reserve_launch_slot(self, order, launch_date, status, week_start=None, week_end=None, capacity=None):
        self._maybe_fail('reserve_launch_slot', order, launch_date)
        with self._lock:
            if capacity is not None and len(self.launches_between(week_start, week_end)) >= capacity:
                return None
            if any(o['stripe_session_id'] == order.session_id for o in self.orders):
                return {'product_id': None, 'order_id': None, 'created': False, 'duplicate': True}

            draft = next((p for p in self.products.values()
                          if p['slug'] == order.product_slug
                          and p['owner_id'] == order.user_id
                          and p['status'] == 'draft'), None)
            if draft is None and any(p['slug'] == order.product_slug and p['owner_id'] == order.user_id
                                     for p in self.products.values()):
                raise database.ProductConflict(order.product_slug)
            if draft:
                draft.update(name=order.product_name, tagline=order.tagline,
                             description=order.description, url=order.domain_url,
                             status=status, launch_date=launch_date, plan=order.plan_tier)
                product_id = draft['product_id']
            else:
                product_id = self.add_product(
                    status=status, launch_date=launch_date, slug=order.product_slug,
                    owner_id=order.user_id, name=order.product_name, tagline=order.tagline,
                    description=order.description, url=order.domain_url, plan=order.plan_tier)
                self.categories.extend((product_id, c) for c in order.categories)
                if order.media.get('icon'):
                    self.media.append((product_id, 'icon', order.media['icon']))
                if order.media.get('thumbnail'):
                    self.media.append((product_id, 'thumbnail', order.media['thumbnail']))
                self.media.extend((product_id, 'screenshot', url)
                                  for url in order.media.get('screenshots') or [])

            order_id = len(self.orders) + 1
            self.orders.append({
                'order_id': order_id, 'user_id': order.user_id, 'product_id': product_id,
                'plan': order.plan_tier, 'stripe_session_id': order.session_id,
                'status': 'fulfilled', 'launch_date': launch_date,
            })
            return {'product_id': product_id, 'order_id': order_id,
                    'created': draft is None, 'duplicate': False}

    def mark_due_products_launched(self, now):
        self._maybe_fail('mark_due_products_launched', now)
        launched = []
        for p in self.products.values():
            if p['status'] == 'scheduled' and p['launch_date'] <= now:
                p['status'] = 'launched'
                launched.append(dict(p, name=p.get('name', p['slug'])))
        return launched

    def get_launched_products_between(self, start, end):
        self._maybe_fail('get_launched_products_between', start, end)
        return [
            {'product_id': p['product_id'], 'status': p['status'], 'launch_date': p['launch_date']}
            for p in self.products.values()
            if p['status'] == 'launched' and start <= p['launch_date'] <= end
        ]

    def get_votes_for_products(self, product_ids):
        self._maybe_fail('get_votes_for_products', product_ids)
        wanted = set(product_ids)
        return [dict(v) for v in self.votes if v['product_id'] in wanted]

    def set_winner_flag(self, column, product_id):
        self._maybe_fail('set_winner_flag', column, product_id)
        with self._lock:
            for p in self.products.values():
                p[column] = p['product_id'] == product_id

    def replace_archive_entries(self, year, period, entries):
        self._maybe_fail('replace_archive_entries', year, period, entries)
        keep = {e.product_id for e in entries}
        for key in [k for k in self.archives if k[:2] == (year, period) and k[2] not in keep]:
            del self.archives[key]
        for e in entries:
            self.archives[(year, period, e.product_id)] = {
                'year': year, 'period': period, 'product_id': e.product_id,
                'rank': e.rank, 'net_votes': e.net_votes,
            }

    def get_archive_entries(self, year, period):
        rows = [r for (y, p, _), r in self.archives.items() if (y, p) == (year, period)]
        return sorted(rows, key=lambda r: r['rank'])

    def log_cron_start(self, job_type):
        log_id = len(self.cron_logs) + 1
        self.cron_logs[log_id] = {'job_type': job_type, 'status': 'started'}
        return log_id

    def log_cron_complete(self, log_id, details=None):
        self.cron_logs[log_id].update(status='completed', details=details)

    def log_cron_failure(self, log_id, error_message):
        self.cron_logs[log_id].update(status='failed', error_message=error_message)


@pytest.fixture()
def fake_db(monkeypatch):
    """In-memory datastore wired into the database module"""
    return FakeDatastore().install(monkeypatch)


@pytest.fixture()
def make_order():
    """Factory for OrderFulfilled events with unique session ids"""
    def _make(plan_tier='join', slug=None, user_id=None, **kwargs):
        suffix = uuid.uuid4().hex[:8]
        return OrderFulfilled(
            session_id=kwargs.pop('session_id', f'cs_test_{suffix}'),
            user_id=user_id or str(uuid.uuid4()),
            plan_tier=plan_tier,
            product_slug=slug or f'launch-{suffix}',
            product_name=kwargs.pop('product_name', 'Launch Product'),
            tagline=kwargs.pop('tagline', 'Ships faster'),
            description=kwargs.pop('description', '<p>Great product</p>'),
            domain_url=kwargs.pop('domain_url', 'https://example.com'),
            **kwargs,
        )
    return _make


@pytest.fixture()
def sunday_midnight():
    """Sunday 2026-10-18 00:00 in the launch time zone"""
    return datetime(2026, 10, 18, 0, 0, tzinfo=LA)


# ============== PostgreSQL ==============

@pytest.fixture(scope='session')
def db_schema():
    """
    Session-scoped: set up the test database schema once from schema.sql.
    """
    try:
        conn = get_test_connection()
    except psycopg2.OperationalError:
        pytest.skip('PostgreSQL test database not reachable')
    conn.autocommit = True
    try:
        with conn.cursor() as cursor:
            schema_path = os.path.join(os.path.dirname(__file__), '..', 'schema.sql')
            with open(schema_path, 'r', encoding='utf-8') as f:
                cursor.execute(f.read())
        yield conn
    finally:
        conn.close()


class ConnectionProxy:
    """
    Wraps a psycopg2 connection with savepoint-based commit/rollback.

    Database functions call commit() on success and rollback() on error.
    This proxy translates those into savepoint operations so that:
    - commit() preserves changes within the test transaction
    - rollback() recovers from errors without losing prior work
    - close() is a no-op (the real connection stays open for the test)
    """

    def __init__(self, real_conn):
        object.__setattr__(self, '_real_conn', real_conn)
        object.__setattr__(self, '_sp_id', 0)
        # Create initial savepoint
        with real_conn.cursor() as cur:
            cur.execute("SAVEPOINT proxy_sp_0")

    def close(self):
        pass

    def commit(self):
        rc = object.__getattribute__(self, '_real_conn')
        sp_id = object.__getattribute__(self, '_sp_id')
        next_id = sp_id + 1
        object.__setattr__(self, '_sp_id', next_id)
        with rc.cursor() as cur:
            cur.execute(f"RELEASE SAVEPOINT proxy_sp_{sp_id}")
            cur.execute(f"SAVEPOINT proxy_sp_{next_id}")

    def rollback(self):
        rc = object.__getattribute__(self, '_real_conn')
        sp_id = object.__getattribute__(self, '_sp_id')
        with rc.cursor() as cur:
            cur.execute(f"ROLLBACK TO SAVEPOINT proxy_sp_{sp_id}")

    def __getattr__(self, name):
        return getattr(object.__getattribute__(self, '_real_conn'), name)

    def __setattr__(self, name, value):
        if name in ('_real_conn', '_sp_id'):
            object.__setattr__(self, name, value)
        else:
            setattr(object.__getattribute__(self, '_real_conn'), name, value)


@pytest.fixture()
def db_conn(db_schema, monkeypatch):
    """
    Per-test fixture: provides a connection wrapped in a transaction
    that gets rolled back after each test. Also monkeypatches
    database.get_connection so that all database functions use this
    test connection instead of creating their own.
    """
    conn = get_test_connection()
    conn.autocommit = False

    # Wrap in proxy with savepoint-based commit/rollback
    proxy = ConnectionProxy(conn)

    monkeypatch.setattr(database, 'get_connection', lambda: proxy)

    yield conn

    # Roll back all changes from this test
    try:
        conn.rollback()
    finally:
        conn.close()


@pytest.fixture()
def live_db(db_schema, monkeypatch):
    """
    Per-test fixture for concurrency tests: every database call opens its
    own connection and commits for real, so advisory locks are contended
    across sessions. Add owner ids to the yielded set; their orders and
    products are deleted afterwards.
    """
    monkeypatch.setattr(database, 'get_connection', get_test_connection)
    owners = set()

    yield owners

    if not owners:
        return
    conn = get_test_connection()
    try:
        with conn.cursor() as cursor:
            cursor.execute("DELETE FROM orders WHERE user_id = ANY(%s::uuid[])", (list(owners),))
            cursor.execute("DELETE FROM products WHERE owner_id = ANY(%s::uuid[])", (list(owners),))
        conn.commit()
    finally:
        conn.close()
