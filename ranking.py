"""
Ranking Module
Vote tallies and dense rank ordering for launched products
"""
from collections import namedtuple


RankedProduct = namedtuple('RankedProduct', ['product_id', 'net_votes', 'rank', 'launch_date'])


def tally_votes(votes):
    """
    Sum vote values per product.

    Args:
        votes: Iterable of dicts with 'product_id' and 'value'

    Returns:
        Dict of product_id -> net votes
    """
    totals = {}
    for vote in votes:
        product_id = vote['product_id']
        totals[product_id] = totals.get(product_id, 0) + (vote['value'] or 0)
    return totals


def _in_window(launch_date, window_start, window_end):
    if launch_date is None:
        return False
    if window_start is not None and launch_date < window_start:
        return False
    if window_end is not None and launch_date > window_end:
        return False
    return True


def rank_products(products, votes, window_start=None, window_end=None, limit=None):
    """
    Rank launched products by net votes.

    Only products with status 'launched' and a launch date inside
    [window_start, window_end] are candidates. The window applies to the
    launch date; every vote on a candidate counts no matter when it was cast.

    Ordering is net votes descending, then earlier launch date, then
    product_id, so equal tallies always resolve the same way.

    Args:
        products: Iterable of dicts with product_id, status, launch_date
        votes: Iterable of dicts with product_id, value
        window_start: Earliest launch date (inclusive), or None
        window_end: Latest launch date (inclusive), or None
        limit: Keep only the top N after ranking

    Returns:
        List of RankedProduct with ranks 1..N
    """
    totals = tally_votes(votes)
    candidates = [
        p for p in products
        if p['status'] == 'launched'
        and _in_window(p['launch_date'], window_start, window_end)
    ]
    candidates.sort(key=lambda p: (-totals.get(p['product_id'], 0),
                                   p['launch_date'],
                                   str(p['product_id'])))
    if limit is not None:
        candidates = candidates[:limit]

    return [
        RankedProduct(
            product_id=p['product_id'],
            net_votes=totals.get(p['product_id'], 0),
            rank=position,
            launch_date=p['launch_date'],
        )
        for position, p in enumerate(candidates, start=1)
    ]


def top_product(products, votes, window_start=None, window_end=None):
    """Return the rank-1 RankedProduct for the window, or None if it has no candidates"""
    ranked = rank_products(products, votes, window_start, window_end, limit=1)
    return ranked[0] if ranked else None
