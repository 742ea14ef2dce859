"""
Archive Module
Yearly snapshot of the top launched products per period
"""
import logging
from datetime import date, datetime, timedelta, timezone

import database as db
from config import Config
from launch_scheduler import get_launch_timezone, local_midnight
from ranking import rank_products

logger = logging.getLogger(__name__)

ARCHIVE_PERIODS = ('today', 'week', 'month', 'year')


def period_date_range(period, year):
    """
    Launch-date range covered by an archive period of the given year.

    'today' is December 31, 'week' the last seven days of the year,
    'month' December and 'year' the whole year. Both bounds are inclusive;
    the range ends at the last instant of December 31 in the launch zone.
    """
    tz = get_launch_timezone()
    end = local_midnight(date(year + 1, 1, 1), tz) - timedelta(microseconds=1)
    first_day = {
        'today': date(year, 12, 31),
        'week': date(year, 12, 25),
        'month': date(year, 12, 1),
        'year': date(year, 1, 1),
    }.get(period)
    if first_day is None:
        raise ValueError(f"Unknown archive period: {period}")
    return local_midnight(first_day, tz), end


def archive_period(year, period, top_n=None):
    """
    Rank one period and store its top entries.

    Returns:
        Number of archived products (0 when the period had no launches)
    """
    top_n = Config.ARCHIVE_TOP_N if top_n is None else top_n
    start, end = period_date_range(period, year)
    logger.info(f"Processing {period} {year}: {start.isoformat()} to {end.isoformat()}")

    products = db.get_launched_products_between(start, end)
    if not products:
        logger.info(f"No launched products for {period} {year}, skipping")
        return 0

    votes = db.get_votes_for_products([p['product_id'] for p in products])
    entries = rank_products(products, votes, start, end, limit=top_n)
    db.replace_archive_entries(year, period, entries)
    logger.info(f"Archived top {len(entries)} of {len(products)} products for {period} {year}")
    return len(entries)


def archive_year(year=None, now=None, top_n=None):
    """
    Archive the top products of every period of a year.

    Defaults to the year before now. Periods are independent: a failing
    period is logged and reported, and the remaining periods still run.

    Returns:
        Dict with year, periods (period -> count), total_archived and failed
    """
    if year is None:
        now = now or datetime.now(timezone.utc)
        year = now.astimezone(get_launch_timezone()).year - 1

    log_id = db.log_cron_start('archive_year')
    logger.info(f"Archiving products for year: {year}")

    periods = {}
    failed = []
    for period in ARCHIVE_PERIODS:
        try:
            periods[period] = archive_period(year, period, top_n=top_n)
        except db.DatastoreError:
            logger.exception(f"Archiving {period} {year} failed; continuing with remaining periods")
            failed.append(period)

    total = sum(periods.values())
    result = {'year': year, 'periods': periods, 'total_archived': total, 'failed': failed}
    logger.info(f"Archive complete. Total products archived: {total}")

    if len(failed) == len(ARCHIVE_PERIODS):
        db.log_cron_failure(log_id, f"All periods failed for {year}")
    else:
        db.log_cron_complete(log_id, details=result)
    return result
