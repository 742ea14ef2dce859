"""
Winner Detection Module
Flags the top launched product of the last day, week and month
"""
import logging
from datetime import datetime, timedelta, timezone

import database as db
from ranking import top_product

logger = logging.getLogger(__name__)

# (window name, winner flag column, look-back)
WINNER_WINDOWS = (
    ('daily', 'won_daily', timedelta(hours=24)),
    ('weekly', 'won_weekly', timedelta(days=7)),
    ('monthly', 'won_monthly', timedelta(days=30)),
)


def window_bounds(now):
    """Map each window name to its (start, end) launch-date range ending at now"""
    return {name: (now - span, now) for name, _, span in WINNER_WINDOWS}


def find_window_winner(start, end):
    """Top launched product by net votes among launches in [start, end], or None"""
    products = db.get_launched_products_between(start, end)
    if not products:
        return None
    votes = db.get_votes_for_products([p['product_id'] for p in products])
    return top_product(products, votes, start, end)


def detect_winners(now=None):
    """
    Recompute the daily, weekly and monthly winner flags.

    Each window is ranked and then swapped in on its own, so a failure in
    one window leaves that window's previous flag in place and does not
    affect the others. A window with no launched products clears its flag.

    Returns:
        Dict with 'winners' (window -> product_id or None) and 'failed'
        (list of window names that could not be updated)
    """
    now = now or datetime.now(timezone.utc)
    log_id = db.log_cron_start('detect_winners')
    bounds = window_bounds(now)
    winners = {}
    failed = []

    for name, column, _ in WINNER_WINDOWS:
        start, end = bounds[name]
        try:
            winner = find_window_winner(start, end)
            db.set_winner_flag(column, winner.product_id if winner else None)
        except db.DatastoreError:
            logger.exception(f"Winner detection failed for {name} window; keeping previous flag")
            failed.append(name)
            continue

        if winner:
            winners[name] = winner.product_id
            logger.info(f"{name.capitalize()} winner: {winner.product_id} with {winner.net_votes} votes")
        else:
            winners[name] = None
            logger.info(f"No launched products in {name} window; {column} cleared")

    details = {'winners': winners, 'failed': failed}
    if len(failed) == len(WINNER_WINDOWS):
        db.log_cron_failure(log_id, f"All windows failed: {', '.join(failed)}")
    else:
        db.log_cron_complete(log_id, details=details)
    return details
