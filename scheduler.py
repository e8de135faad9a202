"""
Payment Scheduler

Periodic scan-and-dispatch over the payment store. Each tick:
1. Scanning - load confirmed payments whose recipient was never alerted and
   pending payments older than the reminder threshold
2. Reconcile stale pending payments against the chain, if a chain client
   is available (mined -> confirmed/failed)
3. Dispatching - format and send each alert or reminder through the bot
   transport, one record at a time

A failed delivery is logged and counted; the record is left unmarked so the
next tick picks it up again (at-least-once). Ticks never overlap: a tick
requested while another one is running is skipped.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Awaitable, Callable, Dict, List, Optional

from models import (
    PaymentEvent,
    PaymentRecord,
    STATUS_CONFIRMED,
    STATUS_FAILED,
    now_ts,
)
from notifications import NotificationFormatter
from payment_store import PaymentStore

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_SCANNING = "scanning"
STATE_DISPATCHING = "dispatching"


@dataclass
class TickResult:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    reconciled: int = 0
    error: Optional[str] = None

    def to_dict(self):
        return asdict(self)


class PaymentScheduler:

    def __init__(
        self,
        store: PaymentStore,
        formatter: NotificationFormatter,
        transport,
        chat_resolver: Callable[[str], Awaitable[Optional[int]]],
        chain=None,
        interval: float = 60,
        pending_after: int = 600,
        remind_every: int = 3600,
        batch_limit: int = 50,
        clock: Callable[[], int] = now_ts,
    ):
        """
        Args:
            transport: BotTransport used for every delivery
            chat_resolver: async address -> telegram chat id (or None)
            chain: optional ChainClient for pending-payment reconciliation
            interval: seconds between timer firings
            pending_after: age in seconds before a pending payment is reminded
            remind_every: minimum seconds between two reminders for one payment
            batch_limit: max records per category per tick
        """
        self.store = store
        self.formatter = formatter
        self.transport = transport
        self.chat_resolver = chat_resolver
        self.chain = chain
        self.interval = interval
        self.pending_after = pending_after
        self.remind_every = remind_every
        self.batch_limit = batch_limit
        self.clock = clock

        self.state = STATE_IDLE
        self.ticks_run = 0
        self.ticks_skipped = 0
        self.last_result: Optional[TickResult] = None
        self.last_tick_at: Optional[int] = None

        self._tick_lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        """True while the timer loop is alive."""
        return self._loop_task is not None and not self._loop_task.done()

    def start(self):
        """Start the timer. The first tick fires immediately."""
        if self.is_running:
            logger.info("[PaymentScheduler] Scheduler is already running")
            return
        self._loop_task = asyncio.create_task(self._timer())
        logger.info(f"[PaymentScheduler] ✓ Started (tick every {self.interval:g}s)")

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop the timer and let an in-flight tick finish.

        With a timeout, a tick still running after `timeout` seconds is
        cancelled.
        """
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tick_task = self._tick_task
        if tick_task is not None and not tick_task.done():
            logger.info("[PaymentScheduler] Waiting for in-flight tick to finish...")
            try:
                await asyncio.wait_for(asyncio.shield(tick_task), timeout)
            except asyncio.TimeoutError:
                logger.warning("[PaymentScheduler] In-flight tick timed out, cancelling")
                tick_task.cancel()
                try:
                    await tick_task
                except asyncio.CancelledError:
                    pass
        self._tick_task = None
        logger.info("[PaymentScheduler] Scheduler stopped")

    async def _timer(self):
        while True:
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(self._guarded_tick())
            else:
                # Previous tick still dispatching
                self.ticks_skipped += 1
                logger.warning("[PaymentScheduler] Previous tick still running, skipping this one")
            await asyncio.sleep(self.interval)

    async def _guarded_tick(self):
        try:
            await self.tick()
        except Exception:
            logger.exception("[PaymentScheduler] Tick crashed")

    async def tick(self) -> Optional[TickResult]:
        """
        Run one scan-and-dispatch cycle.

        Returns None when another tick is already in progress.
        """
        if self._tick_lock.locked():
            self.ticks_skipped += 1
            logger.warning("[PaymentScheduler] Tick already in progress, skipping")
            return None

        async with self._tick_lock:
            result = TickResult()
            now = self.clock()
            try:
                self.state = STATE_SCANNING
                try:
                    confirmed = await self.store.find_unnotified_confirmed(self.batch_limit)
                    # Every stale pending payment is reconciled; the reminder
                    # throttle only applies to the ones still unmined
                    pending = await self.store.find_stale_pending(
                        self.pending_after, 0, self.batch_limit, now=now
                    )
                except Exception as e:
                    logger.error(f"[PaymentScheduler] Scan failed: {e}")
                    result.error = str(e)
                    return result

                events: Dict[str, PaymentEvent] = {}
                unmined = await self._reconcile(pending, confirmed, events, result)
                reminders = [record for record in unmined if self._reminder_due(record, now)]

                if confirmed or reminders:
                    logger.info(
                        f"[PaymentScheduler] Dispatching {len(confirmed)} alert(s) "
                        f"and {len(reminders)} reminder(s)"
                    )

                self.state = STATE_DISPATCHING
                for record in confirmed:
                    await self._dispatch_alert(record, events.get(record.tx_hash), now, result)
                for record in reminders:
                    await self._dispatch_reminder(record, now, result)

                if result.sent or result.failed:
                    logger.info(
                        f"[PaymentScheduler] Tick done: {result.sent} sent, {result.failed} failed, "
                        f"{result.skipped} skipped, {result.reconciled} reconciled"
                    )
                return result
            finally:
                self.state = STATE_IDLE
                self.ticks_run += 1
                self.last_tick_at = now
                self.last_result = result

    async def _reconcile(
        self,
        pending: List[PaymentRecord],
        confirmed: List[PaymentRecord],
        events: Dict[str, PaymentEvent],
        result: TickResult,
    ) -> List[PaymentRecord]:
        """
        Check stale pending payments on chain. Mined ones change status
        (confirmed ones join this tick's alerts, rendered from their
        PaymentSent event when it can be decoded); the unmined rest are
        returned as reminder candidates.
        """
        if self.chain is None:
            return list(pending)

        reminders = []
        for record in pending:
            try:
                receipt = await self.chain.get_transaction_receipt(record.tx_hash)
            except Exception as e:
                logger.warning(f"[PaymentScheduler] Receipt lookup failed for {record.tx_hash[:12]}...: {e}")
                reminders.append(record)
                continue

            if receipt is None:
                reminders.append(record)
                continue

            status = STATUS_CONFIRMED if receipt["status"] == STATUS_CONFIRMED else STATUS_FAILED
            try:
                await self.store.set_status(record.tx_hash, status)
            except Exception as e:
                logger.error(f"[PaymentScheduler] Could not update {record.tx_hash[:12]}... to {status}: {e}")
                continue

            result.reconciled += 1
            if status == STATUS_CONFIRMED and record.notified_at is None:
                record.status = STATUS_CONFIRMED
                confirmed.append(record)
                event = await self._decode_event(record)
                if event is not None:
                    events[record.tx_hash] = event
        return reminders

    def _reminder_due(self, record: PaymentRecord, now: int) -> bool:
        """True when the sender was never reminded or remind_every has elapsed."""
        return record.reminded_at is None or record.reminded_at <= now - self.remind_every

    async def _decode_event(self, record: PaymentRecord) -> Optional[PaymentEvent]:
        if not getattr(self.chain, "send_cash_configured", False):
            return None
        try:
            event = await self.chain.parse_payment_event(record.tx_hash)
        except Exception as e:
            logger.warning(f"[PaymentScheduler] Could not decode PaymentSent for {record.tx_hash[:12]}...: {e}")
            return None
        if event is not None and event.memo is None:
            event.memo = record.memo
        return event

    async def _dispatch_alert(
        self,
        record: PaymentRecord,
        event: Optional[PaymentEvent],
        now: int,
        result: TickResult,
    ):
        try:
            chat_id = await self.chat_resolver(record.to_address)
            if chat_id is None:
                # Recipient never linked a chat; nothing will ever be deliverable
                result.skipped += 1
                await self.store.mark_notified(record.tx_hash, now)
                return
            text = self.formatter.format_payment(event or PaymentEvent.from_record(record))
            await self.transport.send_message(chat_id, text)
            await self.store.mark_notified(record.tx_hash, now)
            result.sent += 1
            logger.info(f"[PaymentScheduler] ✓ Alert sent to {chat_id} for {record.tx_hash[:12]}...")
        except Exception as e:
            result.failed += 1
            logger.error(f"[PaymentScheduler] Alert for {record.tx_hash[:12]}... failed: {e}")

    async def _dispatch_reminder(self, record: PaymentRecord, now: int, result: TickResult):
        try:
            chat_id = await self.chat_resolver(record.from_address)
            if chat_id is None:
                result.skipped += 1
                await self.store.mark_reminded(record.tx_hash, now)
                return
            text = self.formatter.format_pending_reminder(record, now)
            await self.transport.send_message(chat_id, text)
            await self.store.mark_reminded(record.tx_hash, now)
            result.sent += 1
            logger.info(f"[PaymentScheduler] ✓ Reminder sent to {chat_id} for {record.tx_hash[:12]}...")
        except Exception as e:
            result.failed += 1
            logger.error(f"[PaymentScheduler] Reminder for {record.tx_hash[:12]}... failed: {e}")
