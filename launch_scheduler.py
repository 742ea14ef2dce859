"""
Launch Scheduler Module
Assigns launch dates to paid submissions under a weekly capacity limit
and promotes scheduled products once their launch date arrives
"""
import logging
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import database as db
from config import Config

logger = logging.getLogger(__name__)

# Minimum days between payment and launch, by plan
PLAN_OFFSET_DAYS = {
    'skip': 1,
    'join': 8,
    'relaunch': 31,
}
DEFAULT_OFFSET_DAYS = 1

PLAN_TIERS = ('free', 'join', 'skip', 'relaunch')


class LaunchSchedulingError(Exception):
    """Base class for launch scheduling failures"""


class CapacityExhausted(LaunchSchedulingError):
    """No week with free capacity was found within the search limit"""

    def __init__(self, plan_tier, attempts):
        self.plan_tier = plan_tier
        self.attempts = attempts
        super().__init__(f"No launch capacity found for plan '{plan_tier}' after {attempts} attempts")


class SlugConflict(LaunchSchedulingError):
    """The owner already has a launched or scheduled product with this slug"""

    def __init__(self, product_slug):
        self.product_slug = product_slug
        super().__init__(f"Slug '{product_slug}' is already in use by a non-draft product")


class OrderFulfilled:
    """A paid order ready to be turned into a scheduled product"""

    def __init__(self, session_id, user_id, plan_tier, product_slug, product_name,
                 tagline=None, description=None, domain_url=None, categories=None,
                 media=None, selected_date=None):
        self.session_id = session_id
        self.user_id = user_id
        self.plan_tier = plan_tier
        self.product_slug = product_slug
        self.product_name = product_name
        self.tagline = tagline
        self.description = description
        self.domain_url = domain_url
        self.categories = list(categories or [])
        self.media = dict(media or {})
        self.selected_date = selected_date

    def __repr__(self):
        return f"OrderFulfilled(session_id={self.session_id!r}, plan_tier={self.plan_tier!r}, slug={self.product_slug!r})"


def get_launch_timezone():
    return ZoneInfo(Config.LAUNCH_TIMEZONE)


def _now(now=None):
    return now if now is not None else datetime.now(timezone.utc)


def plan_offset_days(plan_tier):
    return PLAN_OFFSET_DAYS.get(plan_tier, DEFAULT_OFFSET_DAYS)


def local_midnight(day, tz=None):
    """Midnight at the start of a calendar date in the launch time zone"""
    return datetime.combine(day, time.min, tzinfo=tz or get_launch_timezone())


def week_bounds(moment):
    """
    Monday-aligned capacity week containing moment.

    Returns:
        (start, end) with start at Monday 00:00 inclusive and end at the
        following Monday 00:00 exclusive, both in the launch time zone.
    """
    tz = get_launch_timezone()
    local_day = moment.astimezone(tz).date()
    monday = local_day - timedelta(days=local_day.weekday())
    return local_midnight(monday, tz), local_midnight(monday + timedelta(days=7), tz)


def first_eligible_day(plan_tier, now=None):
    """
    First calendar date whose midnight is at least the plan offset from now.
    """
    tz = get_launch_timezone()
    earliest = (_now(now).astimezone(timezone.utc) + timedelta(days=plan_offset_days(plan_tier))).astimezone(tz)
    day = earliest.date()
    if local_midnight(day, tz) < earliest:
        day += timedelta(days=1)
    return day


def parse_requested_date(value):
    """
    Parse a requested launch date from order metadata.

    Date-only values and naive timestamps are read as launch-zone wall time.
    Returns None for empty values; raises ValueError for malformed ones.
    """
    if not value:
        return None
    tz = get_launch_timezone()
    if len(value) == 10:
        return local_midnight(datetime.strptime(value, '%Y-%m-%d').date(), tz)
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def iter_launch_candidates(plan_tier, now=None, capacity=None, max_attempts=None):
    """
    Yield launch dates, earliest first, whose week currently has room.

    Each candidate is a local midnight. When a week is full, or the caller
    resumes after failing to book the yielded date, the search jumps to the
    Monday of the following week. Raises CapacityExhausted once
    max_attempts days have been examined.
    """
    capacity = Config.LAUNCH_CAPACITY_PER_WEEK if capacity is None else capacity
    max_attempts = Config.LAUNCH_SEARCH_MAX_ATTEMPTS if max_attempts is None else max_attempts
    tz = get_launch_timezone()
    day = first_eligible_day(plan_tier, now)

    for _ in range(max_attempts):
        candidate = local_midnight(day, tz)
        week_start, week_end = week_bounds(candidate)
        booked = db.count_launches_in_range(week_start, week_end)
        logger.debug(f"Week of {week_start.date()}: {booked}/{capacity} launches")
        if booked < capacity:
            yield candidate
        day = week_end.date()

    raise CapacityExhausted(plan_tier, max_attempts)


def assign_launch_slot(plan_tier, requested_date=None, now=None, capacity=None):
    """
    Pick the launch date for a paid plan.

    A 'skip' order with a requested date (already checked for availability
    upstream) keeps that date. Every other order gets the first date at
    least the plan offset away whose week is under capacity.

    Raises:
        CapacityExhausted: no week had room within the search limit
    """
    if plan_tier == 'skip' and requested_date is not None:
        return requested_date
    return next(iter_launch_candidates(plan_tier, now=now, capacity=capacity))


def _status_for(launch_date, now):
    return 'scheduled' if launch_date > now else 'launched'


def _book_first_open_week(order, now):
    capacity = Config.LAUNCH_CAPACITY_PER_WEEK
    for launch_date in iter_launch_candidates(order.plan_tier, now=now, capacity=capacity):
        week_start, week_end = week_bounds(launch_date)
        booking = db.reserve_launch_slot(
            order, launch_date, _status_for(launch_date, now),
            week_start=week_start, week_end=week_end, capacity=capacity
        )
        if booking is not None:
            return launch_date, booking
        logger.info(f"Week of {week_start.date()} filled before booking {order.session_id}, searching further")


def _record_unbooked_order(order, status):
    draft = db.get_draft_product(order.product_slug, order.user_id)
    db.record_order(
        user_id=order.user_id,
        plan=order.plan_tier,
        stripe_session_id=order.session_id,
        status=status,
        product_id=draft['product_id'] if draft else None,
    )


def process_fulfilled_order(order, now=None):
    """
    Schedule the product behind a fulfilled order.

    Reprocessing is safe: a session that already has an order row is
    acknowledged without side effects, and an owner's draft product with
    the same slug is filled in rather than duplicated.

    Returns:
        Dict with product_id, order_id, launch_date, status, created, duplicate

    Raises:
        CapacityExhausted: order recorded as 'capacity_exhausted', no product written
        SlugConflict: order recorded as 'slug_conflict', no product written
        database.DatastoreError: nothing committed, safe to redeliver
    """
    now = _now(now)

    existing = db.get_order_by_session_id(order.session_id)
    if existing:
        logger.info(f"Session {order.session_id} already recorded as order {existing['order_id']}, skipping")
        return {
            'product_id': existing['product_id'],
            'order_id': existing['order_id'],
            'launch_date': existing['launch_date'],
            'status': existing['status'],
            'created': False,
            'duplicate': True,
        }

    try:
        if order.plan_tier == 'skip' and order.selected_date is not None:
            launch_date = assign_launch_slot(order.plan_tier, order.selected_date, now=now)
            booking = db.reserve_launch_slot(order, launch_date, _status_for(launch_date, now))
        else:
            launch_date, booking = _book_first_open_week(order, now)
    except CapacityExhausted:
        logger.error(f"Capacity exhausted for paid order {order.session_id} "
                     f"(plan '{order.plan_tier}'); needs manual scheduling")
        _record_unbooked_order(order, 'capacity_exhausted')
        raise
    except db.ProductConflict as e:
        logger.error(f"Paid order {order.session_id} targets slug '{order.product_slug}' "
                     f"which is already scheduled or launched")
        _record_unbooked_order(order, 'slug_conflict')
        raise SlugConflict(order.product_slug) from e

    if booking['duplicate']:
        logger.info(f"Session {order.session_id} was booked by a concurrent delivery")
        return dict(booking, launch_date=None, status=None)

    status = _status_for(launch_date, now)
    logger.info(f"{'Created' if booking['created'] else 'Updated'} product {booking['product_id']} "
                f"for plan '{order.plan_tier}': {status} at {launch_date.isoformat()}")
    return dict(booking, launch_date=launch_date, status=status)


def launch_due_products(now=None):
    """
    Promote scheduled products whose launch date has passed.

    Returns:
        List of launched product rows
    """
    now = _now(now)
    log_id = db.log_cron_start('launch_due_products')
    try:
        launched = db.mark_due_products_launched(now)
    except db.DatastoreError as e:
        db.log_cron_failure(log_id, str(e))
        raise

    for product in launched:
        logger.info(f"Launched product {product['name']} ({product['product_id']})")
    logger.info(f"Launch promotion complete: {len(launched)} products launched")
    db.log_cron_complete(log_id, details={'launched': len(launched)})
    return launched
