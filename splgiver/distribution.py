"""Build unlock schedules for buyers and carry out the transfers that fall due."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import NoReturn

from splgiver.db import Database, DatabaseError
from splgiver.models import Buyer, Group, Schedule, Status, Transaction, _utcnow

_log = logging.getLogger(__name__)

_PERCENT_SCALE = 1_000_000.0
_MAX_BASE_UNITS = 2**64 - 1

DEFAULT_TOKEN_DECIMALS = 9
TRANSFER_ATTEMPTS = 4
RETRY_DELAY_SECONDS = 2.0

Transfer = Callable[[str, int], object]
"""Sends ``amount`` base units of the token to ``wallet``; raises on failure."""


class TransferError(Exception):
    """Raised when a token transfer fails after every attempt."""


def _round_half_away(value: float) -> float:
    return math.copysign(math.floor(abs(value) + 0.5), value)


def _percent_key(percent: float) -> int:
    return max(0, int(_round_half_away(percent * _PERCENT_SCALE)))


def plan_unlocks(
    buyer: Buyer,
    group: Group,
    existing_percents: Iterable[float],
    now: datetime,
) -> list[Schedule]:
    """Return the unlocks still owed to ``buyer``, skipping percents already scheduled.

    Each schedule's ``percent`` is the cumulative share unlocked once it is paid.
    """
    buyer_spl = buyer.total_spl(group.spl_price)
    already_received = buyer.received_spl

    remaining_percent = 1.0 - buyer.received_percent
    current_percent = buyer.received_percent
    remaining_spl = max(buyer_spl - already_received, 0.0)

    if remaining_spl <= 0.0 or remaining_percent <= 0.0:
        _log.info(
            "Buyer %s already received all tokens: received_spl %s, paid_sol %s, spl_price %s",
            buyer.wallet,
            buyer.received_spl,
            buyer.paid_sol,
            group.spl_price,
        )
        return []

    known = {_percent_key(percent) for percent in existing_percents}
    unlock_time = now
    unlocks: list[Schedule] = []

    def add(scheduled_at: datetime, amount: float, percent: float) -> None:
        if _percent_key(percent) not in known:
            unlocks.append(Schedule(group.id, buyer.wallet, scheduled_at, amount, percent))

    if already_received == 0.0:
        percent = min(group.initial_unlock_percent, remaining_percent)
        initial_amount = buyer_spl * percent
        current_percent += percent
        add(unlock_time, initial_amount, current_percent)
        remaining_spl -= initial_amount
        remaining_percent -= percent

    step = timedelta(seconds=group.unlock_interval_seconds)
    while remaining_spl > 0.0 and remaining_percent > 0.0:
        percent = min(group.unlock_percent_per_interval, remaining_percent)
        if percent <= 0.0:
            raise ValueError(
                f"Group {group.id} unlocks {group.unlock_percent_per_interval} per interval; "
                "the remaining tokens would never unlock"
            )
        unlock_time += step
        amount = min(buyer_spl * percent, remaining_spl)
        current_percent += percent
        add(unlock_time, amount, current_percent)
        remaining_spl -= amount
        remaining_percent -= percent

    return unlocks


def make_schedules(db: Database, now: datetime | None = None) -> list[Schedule]:
    """Store the missing unlock schedules of every buyer in every group."""
    start = _utcnow() if now is None else now
    created: list[Schedule] = []
    for group in db.get_groups():
        _log.info("Distributing tokens for group: %s", group.id)
        for buyer in db.get_buyers_by_group(group.id):
            existing = db.get_schedules_by_buyer_and_group(buyer.wallet, group.id)
            planned = plan_unlocks(buyer, group, (s.percent for s in existing), start)
            for schedule in planned:
                try:
                    created.append(db.add_schedule(schedule))
                except DatabaseError as exc:
                    _log.error("Failed to save schedule for %s: %s", buyer.wallet, exc)
    _log.info("Schedules created successfully")
    return created


def to_base_units(amount: float, token_decimals: int) -> int:
    """Convert a token amount to the integer base units sent on chain."""
    scaled = amount * 10.0**token_decimals
    if math.isnan(scaled) or scaled <= 0.0:
        return 0
    if math.isinf(scaled):
        return _MAX_BASE_UNITS
    return min(int(_round_half_away(scaled)), _MAX_BASE_UNITS)


def try_transfer_with_retries(
    transfer: Transfer,
    amount: int,
    buyer_wallet: str,
    attempts: int = TRANSFER_ATTEMPTS,
    delay: float = RETRY_DELAY_SECONDS,
) -> None:
    """Call ``transfer`` until it succeeds, up to ``attempts`` times."""
    last_error: str | None = None
    for attempt in range(1, attempts + 1):
        try:
            transfer(buyer_wallet, amount)
        except Exception as exc:  # any failure of the transfer is retried
            last_error = str(exc)
            _log.warning(
                "Send error for %s (attempt %d/%d): %s",
                buyer_wallet,
                attempt,
                attempts,
                last_error,
            )
            time.sleep(delay)
        else:
            return
    raise TransferError(last_error if last_error is not None else "Unknown transfer error")


def _mark(db: Database, schedule_id: int, status: Status, error_message: str | None) -> None:
    try:
        db.update_schedule_status(schedule_id, status, error_message)
    except DatabaseError as exc:
        _log.error("Failed to mark schedule id=%s as %s: %s", schedule_id, status, exc)


def process_schedule(
    db: Database,
    schedule: Schedule,
    transfer: Transfer,
    token_decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> Transaction | None:
    """Pay out one schedule and record the outcome.

    Returns the transaction record, or None when the group or buyer is missing.
    """
    try:
        group = db.get_group(schedule.group_id)
    except DatabaseError as exc:
        message = f"Failed to get group for schedule id={schedule.id}: {exc}"
        _log.error("%s", message)
        _mark(db, schedule.id, Status.FAILED, message)
        return None
    try:
        buyer = db.get_buyer_by_wallet(schedule.buyer_wallet)
    except DatabaseError as exc:
        message = f"Failed to get buyer for schedule id={schedule.id}: {exc}"
        _log.error("%s", message)
        _mark(db, schedule.id, Status.FAILED, message)
        return None

    transaction = Transaction(
        schedule.buyer_wallet, schedule.group_id, schedule.amount, schedule.percent, Status.SUCCESS
    )

    try:
        try_transfer_with_retries(
            transfer, to_base_units(schedule.amount, token_decimals), buyer.wallet
        )
    except TransferError as exc:
        message = (
            f"Failed to transfer tokens for schedule id={schedule.id} "
            f"buyer={schedule.buyer_wallet} group={schedule.group_id} "
            f"amount={schedule.amount}: Transfer error: {exc}"
        )
        _log.error("%s", message)
        transaction.status = Status.FAILED
        transaction.error_message = message
        transaction.sent_at = _utcnow()
        try:
            db.save_transaction(transaction)
        except DatabaseError as save_exc:
            _log.error(
                "Failed to save failed transaction for schedule id=%s: %s", schedule.id, save_exc
            )
        _mark(db, schedule.id, Status.FAILED, message)
        return transaction

    _log.info(
        "Transferred %s tokens to %s for schedule id=%s",
        schedule.amount,
        buyer.wallet,
        schedule.id,
    )
    transaction.sent_at = _utcnow()
    try:
        db.save_transaction(transaction)
    except DatabaseError as exc:
        _log.error("Failed to save transaction for schedule id=%s: %s", schedule.id, exc)

    buyer_spl = buyer.total_spl(group.spl_price)
    received_spl = buyer.received_spl + schedule.amount
    pending_spl = max(buyer_spl - received_spl, 0.0)
    try:
        db.update_buyer(buyer.wallet, received_spl, schedule.percent, pending_spl)
    except DatabaseError as exc:
        message = f"Failed to update buyer after transfer for schedule id={schedule.id}: {exc}"
        _log.error("%s", message)
        _mark(db, schedule.id, Status.FAILED, message)

    _mark(db, schedule.id, Status.SUCCESS, None)
    return transaction


def run_due_schedules(
    db: Database,
    transfer: Transfer,
    now: datetime | None = None,
    token_decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> list[Transaction | None]:
    """Process every pending schedule due at ``now``; return each outcome."""
    moment = _utcnow() if now is None else now
    results: list[Transaction | None] = []
    for schedule in db.get_schedules_due(moment):
        _log.info(
            "Schedule ready: id=%s buyer=%s group=%s amount=%s scheduled_at=%s",
            schedule.id,
            schedule.buyer_wallet,
            schedule.group_id,
            schedule.amount,
            schedule.scheduled_at,
        )
        results.append(process_schedule(db, schedule, transfer, token_decimals))
    return results


def run_schedule_runner(
    db: Database,
    transfer: Transfer,
    interval: float = 1.0,
    token_decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> NoReturn:
    """Process due schedules forever; a database failure stops the runner."""
    while True:
        try:
            run_due_schedules(db, transfer, None, token_decimals)
        except DatabaseError as exc:
            _log.error("Error fetching due schedules: %s", exc)
            raise
        time.sleep(interval)