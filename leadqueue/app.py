"""Lead processing queue: service facade and command line entry point."""
import argparse
import json
import signal
import sys
import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from leadqueue import settings
from leadqueue.business_calendar import BusinessCalendar
from leadqueue.capacity import CapacityLedger
from leadqueue.db import PostgresStore
from leadqueue.dispatcher import Dispatcher, utcnow
from leadqueue.errors import CapacityExhausted, DuplicateItem, InvalidTransition, PersistenceFailure, QueueError
from leadqueue.logging_conf import logger, setup_logging
from leadqueue.metrics import MetricsMonitor, QueueMetricsSnapshot
from leadqueue.policy import QueueConfig, load_queue_config
from leadqueue.queue.distribution import DistributionEngine
from leadqueue.queue.models import (
    ACTIVE_STATUSES, ALREADY_QUEUED, DUPLICATE_CANDIDATE, FAILED, INVALID_CANDIDATE, PENDING,
    PERSISTENCE_FAILED, QUEUED, Candidate, DistributionResult, ItemFilter, QueueItem, Rejection,
)
from leadqueue.queue.state_machine import QueueStateMachine
from leadqueue.queue.store import QueueStore, call_with_retry
from leadqueue.reconciler import Reconciler
from leadqueue.webhook_client import WebhookSender


class QueueService:
    """Operational surface of the queue.

    Built explicitly from its collaborators; every cache it owns lives on the
    instance. Queue-changing calls invalidate the metrics cache.
    """

    def __init__(self, store: QueueStore, config: QueueConfig, sender=None,
                 clock: Callable[[], datetime] = utcnow,
                 poll_interval: int = 5, reconcile_interval: int = 300):
        self.store = store
        self.config = config
        self.clock = clock
        self.calendar = BusinessCalendar(config.policy)
        self.ledger = CapacityLedger(store, config.daily_limit, config.weekly_limit)
        self.state_machine = QueueStateMachine(store, self.ledger, self.calendar, config)
        self.engine = DistributionEngine(self.calendar, config, self.state_machine)
        self.monitor = MetricsMonitor(store, self.ledger, self.calendar, config, clock=clock)
        self.dispatcher = None
        if sender is not None:
            self.dispatcher = Dispatcher(store, self.state_machine, sender, self.calendar, config,
                                         poll_interval=poll_interval, clock=clock)
        self.reconciler = Reconciler(store, self.state_machine, self.calendar, config,
                                     interval=reconcile_interval, clock=clock)

    # Preparation

    def prepare_queue(self, candidates: Iterable, now: Optional[datetime] = None) -> DistributionResult:
        """Queue candidate leads over the coming working days.

        Never raises for partial failure: every candidate ends up either in
        ``scheduled`` or in ``rejected`` with a reason.
        """
        now = self._now(now)
        accepted, result = self._screen(candidates)
        if not accepted:
            return result

        try:
            active = self._active_by_subject([c.subject_id for c in accepted])
        except PersistenceFailure as e:
            logger.error(f"Cannot read active items, rejecting batch: {e}")
            result.rejected.extend(Rejection(c.subject_id, PERSISTENCE_FAILED, detail=str(e)) for c in accepted)
            return result

        pending = []
        for sequence, candidate in enumerate(accepted):
            existing = active.get(candidate.subject_id)
            if existing is not None and existing.status != PENDING:
                result.rejected.append(Rejection(candidate.subject_id, ALREADY_QUEUED, existing.id,
                                                 f"status is {existing.status}"))
                continue
            if existing is not None:
                pending.append(existing)
                continue
            item = QueueItem.create(candidate.subject_id, candidate.priority, self.config.max_attempts,
                                    sequence, candidate.metadata, now)
            try:
                pending.append(self.store.insert_item(item))
            except DuplicateItem:
                result.rejected.append(Rejection(candidate.subject_id, ALREADY_QUEUED, item.id))
            except PersistenceFailure as e:
                logger.error(f"Could not create item for lead {candidate.subject_id}: {e}")
                result.rejected.append(Rejection(candidate.subject_id, PERSISTENCE_FAILED, item.id, str(e)))

        distributed = self.engine.distribute(pending, self.ledger, now, commit=True)
        result.scheduled.extend(distributed.scheduled)
        result.rejected.extend(distributed.rejected)
        self.monitor.invalidate()

        summary = ", ".join(f"{day}: {count}" for day, count in sorted(result.per_day().items()))
        logger.info(
            f"Prepared queue: {len(result.scheduled)} scheduled, {len(result.rejected)} rejected"
            + (f" ({summary})" if summary else "")
        )
        return result

    def preview_queue(self, candidates: Iterable, now: Optional[datetime] = None) -> DistributionResult:
        """Dry run of prepare_queue: same placement, nothing persisted."""
        now = self._now(now)
        accepted, result = self._screen(candidates)
        if not accepted:
            return result

        try:
            active = self._active_by_subject([c.subject_id for c in accepted])
            start = self.calendar.next_working_instant(now)
            days = self.calendar.first_working_days(start.date(), self.config.horizon_days)
            ledger = self.ledger.detached(days)
        except PersistenceFailure as e:
            result.rejected.extend(Rejection(c.subject_id, PERSISTENCE_FAILED, detail=str(e)) for c in accepted)
            return result

        pending = []
        for sequence, candidate in enumerate(accepted):
            existing = active.get(candidate.subject_id)
            if existing is not None and existing.status != PENDING:
                result.rejected.append(Rejection(candidate.subject_id, ALREADY_QUEUED, existing.id))
            elif existing is not None:
                pending.append(existing)
            else:
                pending.append(QueueItem.create(candidate.subject_id, candidate.priority,
                                                self.config.max_attempts, sequence, candidate.metadata, now))

        preview = self.engine.distribute(pending, ledger, now, commit=False)
        result.scheduled.extend(preview.scheduled)
        result.rejected.extend(preview.rejected)
        return result

    # Processing

    def start_processing(self):
        if self.dispatcher is None:
            raise QueueError("No sender configured, cannot start processing")
        self.dispatcher.start()
        self.reconciler.start()

    def pause_processing(self):
        """Stop taking new items. Sends in flight finish and are recorded."""
        if self.dispatcher is not None:
            self.dispatcher.stop()
        self.reconciler.stop()
        self.monitor.invalidate()

    def shutdown(self):
        self.pause_processing()
        if self.dispatcher is not None:
            self.dispatcher.shutdown()
        self.store.close()

    def get_metrics(self, now: Optional[datetime] = None) -> QueueMetricsSnapshot:
        return self.monitor.get_metrics(now)

    # Maintenance

    def cancel(self, item_id: str, now: Optional[datetime] = None) -> QueueItem:
        item = self._get(item_id)
        cancelled = self.state_machine.cancel(item, self._now(now))
        self.monitor.invalidate()
        return cancelled

    def reschedule(self, item_id: str, scheduled_for: datetime, now: Optional[datetime] = None) -> QueueItem:
        item = self._get(item_id)
        moved = self.state_machine.reschedule(item, self.calendar.localize(scheduled_for), self._now(now))
        self.monitor.invalidate()
        return moved

    def requeue_failed(self, now: Optional[datetime] = None) -> List[QueueItem]:
        """Retry failed items that still have attempts left."""
        now = self._now(now)
        failed = call_with_retry(
            lambda: self.store.load_eligible_items(ItemFilter(statuses=(FAILED,))),
            "Loading failed items",
        )
        requeued = []
        for item in failed:
            if not item.can_retry:
                continue
            try:
                requeued.append(self.state_machine.retry(item, now))
            except CapacityExhausted as e:
                logger.warning(f"Stopped requeueing: {e}")
                break
            except InvalidTransition as e:
                logger.debug(f"Skipping {item.id}: {e}")
            except DuplicateItem:
                logger.warning(f"Lead {item.subject_id} was queued again since {item.id} failed, retiring it")
                try:
                    self.state_machine.retire(item, now, "superseded by a newer item for the same lead")
                except InvalidTransition as e:
                    logger.debug(f"Skipping {item.id}: {e}")
                self.monitor.invalidate()
        if requeued:
            logger.info(f"Requeued {len(requeued)} failed item(s)")
            self.monitor.invalidate()
        return requeued

    def reset_queue(self, now: Optional[datetime] = None) -> int:
        """Cancel every pending and queued item. Items being sent are left alone."""
        now = self._now(now)
        items = call_with_retry(
            lambda: self.store.load_eligible_items(ItemFilter(statuses=(PENDING, QUEUED))),
            "Loading items to reset",
        )
        cancelled = 0
        for item in items:
            try:
                self.state_machine.cancel(item, now)
                cancelled += 1
            except InvalidTransition as e:
                logger.debug(f"Skipping {item.id}: {e}")
        logger.warning(f"Queue reset: {cancelled} item(s) cancelled")
        self.monitor.invalidate()
        return cancelled

    def _screen(self, candidates: Iterable):
        """Split raw candidates into usable ones and rejections."""
        result = DistributionResult()
        accepted = []
        seen = set()
        for raw in candidates:
            try:
                candidate = Candidate.coerce(raw)
            except (TypeError, ValueError) as e:
                subject = raw.get("subject_id") if isinstance(raw, dict) else raw
                result.rejected.append(Rejection("" if subject is None else str(subject), INVALID_CANDIDATE,
                                                 detail=str(e)))
                continue
            if not candidate.subject_id:
                result.rejected.append(Rejection("", INVALID_CANDIDATE, detail="missing subject id"))
            elif candidate.subject_id in seen:
                result.rejected.append(Rejection(candidate.subject_id, DUPLICATE_CANDIDATE))
            else:
                seen.add(candidate.subject_id)
                accepted.append(candidate)
        return accepted, result

    def _active_by_subject(self, subject_ids):
        items = call_with_retry(
            lambda: self.store.load_eligible_items(
                ItemFilter(statuses=ACTIVE_STATUSES, subject_ids=subject_ids)
            ),
            "Loading active items",
        )
        return {item.subject_id: item for item in items}

    def _get(self, item_id: str) -> QueueItem:
        item = call_with_retry(lambda: self.store.get_item(item_id), f"Loading item {item_id}")
        if item is None:
            raise QueueError(f"Queue item {item_id} not found")
        return item

    def _now(self, now: Optional[datetime]) -> datetime:
        return self.calendar.localize(now or self.clock())


class Application:
    """Long-running process: dispatcher and reconciler over PostgreSQL."""

    def __init__(self, config_file=None):
        self.config_file = config_file
        self.service = None
        self.running = False

    def start(self):
        """Start the application."""
        settings.validate_config()
        config = load_queue_config(self.config_file)

        store = PostgresStore()
        store.ensure_schema()
        sender = WebhookSender(timeout=config.send_timeout.total_seconds())
        self.service = QueueService(store, config, sender,
                                    poll_interval=settings.POLL_INTERVAL,
                                    reconcile_interval=settings.RECONCILE_INTERVAL)

        logger.info("=" * 50)
        logger.info("Lead Processing Queue")
        logger.info("=" * 50)
        logger.info(f"Webhook: {settings.WEBHOOK_URL}")
        logger.info(f"Daily limit: {config.daily_limit}, batch size: {config.batch_size}")
        logger.info(f"Poll interval: {settings.POLL_INTERVAL}s")
        logger.info("=" * 50)

        self.service.start_processing()
        self.running = True
        logger.info("Started - dispatching due queue items")

    def stop(self):
        """Stop the application."""
        if not self.running:
            return
        self.running = False
        self.service.shutdown()
        logger.info("Stopped")

    def run(self):
        """Main loop."""
        self.start()
        try:
            while self.running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        self.stop()


def _build_service(config_file=None) -> QueueService:
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL is required")
    return QueueService(PostgresStore(), load_queue_config(config_file))


def _read_candidates(args) -> List:
    candidates = list(args.leads or [])
    if args.file:
        with open(args.file, "r") as f:
            text = f.read().strip()
        if text.startswith("["):
            candidates.extend(json.loads(text))
        else:
            candidates.extend(line.strip() for line in text.splitlines() if line.strip())
    return candidates


def _print_result(result: DistributionResult):
    out = {
        "scheduled": [
            {"item_id": a.item.id, "lead_id": a.item.subject_id, "scheduled_for": a.scheduled_for.isoformat()}
            for a in result.scheduled
        ],
        "rejected": [
            {"lead_id": r.subject_id, "reason": r.reason, "item_id": r.item_id, "detail": r.detail}
            for r in result.rejected
        ],
        "per_day": {day.isoformat(): count for day, count in sorted(result.per_day().items())},
    }
    print(json.dumps(out, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="leadqueue", description="Capacity-aware lead processing queue")
    parser.add_argument("--config", help="JSON file with the queue policy")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Dispatch due items until stopped (default)")

    prepare = sub.add_parser("prepare", help="Queue leads over the coming working days")
    prepare.add_argument("leads", nargs="*", help="Lead ids")
    prepare.add_argument("--file", help="File with one lead id per line, or a JSON list")
    prepare.add_argument("--dry-run", action="store_true", help="Show the placement without queueing")

    sub.add_parser("metrics", help="Print queue metrics as JSON")
    sub.add_parser("requeue-failed", help="Retry failed items that have attempts left")
    sub.add_parser("reset", help="Cancel all pending and queued items")
    return parser


def main(argv=None):
    """Entry point."""
    args = build_parser().parse_args(argv)
    if args.log_level:
        setup_logging(args.log_level)
    command = args.command or "run"

    if command == "run":
        app = Application(args.config)

        def signal_handler(sig, frame):
            logger.info(f"Received signal {sig}")
            app.stop()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        try:
            app.run()
        except ValueError as e:
            logger.error(f"Configuration error: {e}")
            sys.exit(1)
        return

    try:
        service = _build_service(args.config)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    try:
        if command == "prepare":
            candidates = _read_candidates(args)
            if args.dry_run:
                _print_result(service.preview_queue(candidates))
            else:
                _print_result(service.prepare_queue(candidates))
        elif command == "metrics":
            print(json.dumps(service.get_metrics().to_dict(), indent=2))
        elif command == "requeue-failed":
            print(json.dumps({"requeued": len(service.requeue_failed())}))
        elif command == "reset":
            print(json.dumps({"cancelled": service.reset_queue()}))
    except QueueError as e:
        logger.error(f"{command} failed: {e}")
        sys.exit(1)
    finally:
        service.store.close()


if __name__ == "__main__":
    main()
