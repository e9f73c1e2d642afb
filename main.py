import argparse
import time
import schedule
import logging
import sys
from config.app_config import STUCK_WEBHOOK_MINUTES
from database.config import SessionLocal
from services.offer_service import OfferService
from services.webhook_ledger import WebhookLedger

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("ledger_worker.log")
    ]
)


def run_maintenance_cycle(stuck_minutes: int = STUCK_WEBHOOK_MINUTES):
    logging.info("Starting ledger maintenance cycle...")
    db = SessionLocal()
    try:
        expired = OfferService(db).expire_stale()
        reset = WebhookLedger(db).mark_stuck_as_failed(stuck_minutes)
        logging.info(f"Cycle complete. {expired} offers expired, {reset} stuck webhooks released.")
        return expired, reset
    except Exception as e:
        db.rollback()
        logging.error(f"Error in maintenance cycle: {e}")
        return 0, 0
    finally:
        db.close()


def start_scheduler(interval_minutes: int):
    logging.info(f"Starting ledger scheduler (every {interval_minutes} minutes)...")
    # Run once immediately
    run_maintenance_cycle()

    schedule.every(interval_minutes).minutes.do(run_maintenance_cycle)

    while True:
        schedule.run_pending()
        time.sleep(30)


def main():
    parser = argparse.ArgumentParser(description="Escrow ledger maintenance worker")
    parser.add_argument("--mode", choices=["once", "schedule"], default="schedule", help="Run once or schedule")
    parser.add_argument("--interval", type=int, default=5, help="Minutes between cycles")
    args = parser.parse_args()

    if args.mode == "schedule":
        start_scheduler(args.interval)
    else:
        run_maintenance_cycle()


if __name__ == "__main__":
    main()
