import logging
import threading #runs the job schedule next to the web server
import time
from datetime import datetime, timezone

import schedule
import stripe
from flask import Flask, request, jsonify

import database as db
from archiver import archive_year
from auth import cron_secret_required
from config import Config
from launch_scheduler import get_launch_timezone, launch_due_products
from stripe_utils import InvalidOrderEvent, construct_webhook_event, process_webhook_event
from winners import detect_winners

logger = logging.getLogger(__name__)

app = Flask(__name__)


def _error(code, message, status_code):
    return jsonify({'error': {'code': code, 'message': message, 'details': {}}}), status_code


@app.route("/health")
def health():
    return jsonify({'status': 'ok'})


@app.route("/webhooks/stripe", methods=["POST"])
def stripe_webhook():
    payload = request.get_data()
    sig_header = request.headers.get('Stripe-Signature')
    if not sig_header or not Config.STRIPE_WEBHOOK_SECRET:
        return _error('INVALID_SIGNATURE', 'Missing signature or webhook secret', 400)

    try:
        event = construct_webhook_event(payload, sig_header)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Rejected webhook: {type(e).__name__}")
        return _error('INVALID_SIGNATURE', 'Invalid payload or signature', 400)

    logger.info(f"Webhook event type: {event.get('type')}")
    try:
        result = process_webhook_event(event)
    except InvalidOrderEvent as e:
        logger.error(f"Invalid order event {event.get('id')}: {e}")
        return _error('INVALID_ORDER', str(e), 400)
    except db.DatastoreError as e:
        # Stripe retries non-2xx deliveries; booking is idempotent per session
        logger.error(f"Webhook {event.get('id')} failed, awaiting redelivery: {e}")
        return _error('DATASTORE_ERROR', 'Temporary failure, retry later', 500)

    return jsonify(result)


@app.route("/cron/detect-winners", methods=["POST"])
@cron_secret_required
def detect_winners_route():
    result = detect_winners()
    return jsonify({'success': not result['failed'], **result})


@app.route("/cron/archive-year", methods=["POST"])
@cron_secret_required
def archive_year_route():
    year = request.args.get('year', type=int)
    result = archive_year(year=year)
    return jsonify({'success': not result['failed'], **result})


@app.route("/cron/launch-due", methods=["POST"])
@cron_secret_required
def launch_due_route():
    try:
        launched = launch_due_products()
    except db.DatastoreError as e:
        logger.error(f"Launch promotion failed: {e}")
        return _error('DATASTORE_ERROR', 'Launch promotion failed', 500)
    return jsonify({
        'success': True,
        'launched': len(launched),
        'product_ids': [str(p['product_id']) for p in launched],
    })


# ============== Background Schedule ==============

def run_job(job):
    """Run a scheduled job, logging failures instead of killing the schedule thread"""
    try:
        job()
    except Exception:
        logger.exception(f"Scheduled job {job.__name__} failed")


def archive_if_new_year(now=None):
    """Archive last year when today is January 1 in the launch time zone"""
    now = now or datetime.now(timezone.utc)
    local = now.astimezone(get_launch_timezone())
    if local.month == 1 and local.day == 1:
        return archive_year(now=now)
    return None


def register_jobs(scheduler=schedule):
    scheduler.every(Config.WINNER_DETECTION_INTERVAL_MINUTES).minutes.do(run_job, detect_winners)
    scheduler.every(Config.LAUNCH_PROMOTION_INTERVAL_MINUTES).minutes.do(run_job, launch_due_products)
    scheduler.every().day.at(Config.ARCHIVE_RUN_AT).do(run_job, archive_if_new_year)


scheduler_active = threading.Event()


def run_scheduler():
    while scheduler_active.is_set():
        schedule.run_pending()
        time.sleep(1)


if __name__ == "__main__":
    logging.basicConfig(
        level=Config.LOG_LEVEL,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
    if Config.SCHEDULER_ENABLED:
        register_jobs()
        scheduler_active.set()
        scheduler_thread = threading.Thread(target=run_scheduler, daemon=True)
        scheduler_thread.start()
    app.run()
