from __future__ import annotations

import argparse
import logging
import sys
import threading
from typing import List, Optional

from newsletter_digest import config
from newsletter_digest.config import RuntimeConfig
from newsletter_digest.errors import PipelineError
from newsletter_digest.models import CronSchedule
from newsletter_digest.operation_log import OperationLog
from newsletter_digest.processor import NewsletterProcessor
from newsletter_digest.scheduler import Scheduler
from newsletter_digest.store import RecordStore

SCHEDULE_POLL_SECONDS = 60.0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Newsletter digest pipeline.")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="process new newsletters once (manual trigger)")
    sub.add_parser("schedule", help="run the pipeline at the configured daily times")
    reprocess = sub.add_parser("reprocess", help="reset one newsletter to pending and process it again")
    reprocess.add_argument("newsletter_id", type=int)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    try:
        settings = config.Settings.from_env()
    except ValueError as exc:
        logging.error("Missing configuration: %s", exc)
        return 1

    store = RecordStore(settings.db_path)
    try:
        processor = NewsletterProcessor.from_settings(settings, store)
    except PipelineError as exc:
        logging.error("Pipeline setup failed: %s", exc)
        store.close()
        return 1

    try:
        if args.command == "schedule":
            return _serve(processor, store)
        if args.command == "reprocess":
            result = processor.reprocess_newsletter(args.newsletter_id)
            return 0 if result.is_success() else 1
        return _run_once(processor)
    except LookupError as exc:
        logging.error("%s", exc)
        return 1
    finally:
        store.close()


def _run_once(processor: NewsletterProcessor) -> int:
    try:
        report = processor.manual_trigger()
    except Exception as exc:  # noqa: BLE001
        logging.exception("Batch run failed: %s", exc)
        return 1

    logging.info("Batch completed. Fetched=%s Success=%s Failure=%s", report.fetched, report.succeeded, report.failed)
    if report.results and report.succeeded == 0:
        logging.error("All newsletters failed in this batch.")
        return 1
    return 0


def _serve(processor: NewsletterProcessor, store: RecordStore) -> int:
    runtime = RuntimeConfig(store)
    oplog = OperationLog(store)
    scheduler = Scheduler(processor.process_new_newsletters, oplog)
    schedule = runtime.cron_schedule()
    try:
        scheduler.configure(schedule)
    except ValueError as exc:
        oplog.error("cron_setup", "Failed to set up cron jobs", error=str(exc))
        return 1
    scheduler.start()

    rejected: Optional[CronSchedule] = None
    stopped = threading.Event()
    try:
        while not stopped.wait(SCHEDULE_POLL_SECONDS):
            latest = runtime.cron_schedule()
            if latest != schedule and latest != rejected:
                logging.info("Schedule changed to %s (%s); reconfiguring", latest.times, latest.timezone)
                try:
                    scheduler.reconfigure(latest)
                except ValueError as exc:
                    logging.error("Rejected schedule %s: %s; keeping previous one", latest, exc)
                    scheduler.reconfigure(schedule)
                    rejected = latest
                    continue
                schedule = latest
    except KeyboardInterrupt:
        logging.info("Stopping scheduler.")
    finally:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
