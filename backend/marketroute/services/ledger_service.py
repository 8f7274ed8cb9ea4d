from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from marketroute.errors import InsufficientFunds, InvalidTransition, NotFound, ValidationError
from marketroute.extensions import db
from marketroute.integrations.payments.base import PaymentsProvider
from marketroute.integrations.payments.factory import build_payments_provider
from marketroute.models import EscrowHold, LedgerEntry
from marketroute.utils.concurrency import account_locks
from marketroute.utils.events import log_event
from marketroute.utils.settings import currency

logger = logging.getLogger(__name__)

SYSTEM_CLEARING = "system:clearing"


class HoldStatus:
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"

    ALLOWED = {
        HELD: {HELD, RELEASED, REFUNDED},
        RELEASED: {RELEASED},
        REFUNDED: {REFUNDED},
    }


def _positive_amount(amount) -> int:
    if isinstance(amount, bool):
        raise ValidationError("amount must be a positive integer")
    try:
        value = int(amount)
    except (TypeError, ValueError):
        raise ValidationError("amount must be a positive integer")
    if value != amount or value <= 0:
        raise ValidationError("amount must be a positive integer")
    return value


def balance(user_id: str) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(LedgerEntry.delta), 0))
        .filter(LedgerEntry.user_id == str(user_id))
        .scalar()
    )
    return int(total or 0)


def held_total(user_id: str) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(EscrowHold.amount), 0))
        .filter(EscrowHold.user_id == str(user_id), EscrowHold.status == HoldStatus.HELD)
        .scalar()
    )
    return int(total or 0)


def available_balance(user_id: str) -> int:
    return balance(user_id) - held_total(user_id)


def system_total() -> int:
    total = db.session.query(func.coalesce(func.sum(LedgerEntry.delta), 0)).scalar()
    return int(total or 0)


def entries(user_id: str, *, limit: int = 200) -> list[LedgerEntry]:
    return (
        LedgerEntry.query.filter_by(user_id=str(user_id))
        .order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
        .limit(max(1, min(int(limit), 1000)))
        .all()
    )


def summary(user_id: str) -> dict:
    bal = balance(user_id)
    held = held_total(user_id)
    return {
        "user_id": str(user_id),
        "currency": currency(),
        "balance": bal,
        "held": held,
        "available": bal - held,
    }


def get_hold(hold_id: str) -> EscrowHold:
    row = db.session.get(EscrowHold, str(hold_id))
    if row is None:
        raise NotFound(f"hold {hold_id} not found")
    return row


def _post_pair(
    *,
    debit_user: str,
    credit_user: str,
    amount: int,
    reason: str,
    related_order_id: str | None = None,
    related_hold_id: str | None = None,
    reference: str | None = None,
) -> tuple[LedgerEntry, LedgerEntry]:
    now = datetime.utcnow()
    debit = LedgerEntry(
        user_id=str(debit_user),
        delta=-int(amount),
        reason=f"{reason}_debit"[:48],
        related_order_id=related_order_id,
        related_hold_id=related_hold_id,
        reference=reference,
        created_at=now,
    )
    credit = LedgerEntry(
        user_id=str(credit_user),
        delta=int(amount),
        reason=f"{reason}_credit"[:48],
        related_order_id=related_order_id,
        related_hold_id=related_hold_id,
        reference=reference,
        created_at=now,
    )
    db.session.add(debit)
    db.session.add(credit)
    return debit, credit


def hold(user_id: str, amount: int, related_order_id: str, *, payee_id: str) -> EscrowHold:
    """Earmark ``amount`` of the payer's available balance for an order.

    No entries are written; the hold only lowers the available balance. The
    row is flushed but not committed so it joins the caller's transaction.
    """
    value = _positive_amount(amount)
    with account_locks.hold(user_id):
        available = available_balance(user_id)
        if available < value:
            raise InsufficientFunds(str(user_id), value, available)
        row = EscrowHold(
            order_id=str(related_order_id),
            user_id=str(user_id),
            payee_id=str(payee_id),
            amount=value,
            status=HoldStatus.HELD,
        )
        db.session.add(row)
        db.session.flush()
    log_event(
        "escrow_funded",
        actor_id=user_id,
        subject_type="escrow_hold",
        subject_id=row.id,
        idempotency_key=f"hold:{row.id}:held",
        metadata={"order_id": related_order_id, "amount": value},
    )
    return row


def release(hold_id: str) -> EscrowHold:
    """Settle a hold to the payee: payer debit plus payee credit."""
    row = get_hold(hold_id)
    if row.status == HoldStatus.RELEASED:
        return row
    if row.status not in HoldStatus.ALLOWED or HoldStatus.RELEASED not in HoldStatus.ALLOWED[row.status]:
        raise InvalidTransition("hold", row.status, "release")
    _post_pair(
        debit_user=row.user_id,
        credit_user=row.payee_id,
        amount=int(row.amount),
        reason="escrow_release",
        related_order_id=row.order_id,
        related_hold_id=row.id,
        reference=f"hold:{row.id}",
    )
    row.status = HoldStatus.RELEASED
    row.settled_at = datetime.utcnow()
    log_event(
        "escrow_released",
        subject_type="escrow_hold",
        subject_id=row.id,
        idempotency_key=f"hold:{row.id}:released",
        metadata={"order_id": row.order_id, "amount": int(row.amount), "payee_id": row.payee_id},
    )
    return row


def refund(hold_id: str) -> EscrowHold:
    """Drop a hold. Funds never left the payer so no entries are written."""
    row = get_hold(hold_id)
    if row.status == HoldStatus.REFUNDED:
        return row
    if row.status not in HoldStatus.ALLOWED or HoldStatus.REFUNDED not in HoldStatus.ALLOWED[row.status]:
        raise InvalidTransition("hold", row.status, "refund")
    row.status = HoldStatus.REFUNDED
    row.settled_at = datetime.utcnow()
    log_event(
        "escrow_refunded",
        subject_type="escrow_hold",
        subject_id=row.id,
        idempotency_key=f"hold:{row.id}:refunded",
        metadata={"order_id": row.order_id, "amount": int(row.amount)},
    )
    return row


def _existing_reference(user_id: str, reference: str, reason: str) -> LedgerEntry | None:
    return LedgerEntry.query.filter_by(user_id=str(user_id), reference=reference, reason=reason).first()


def deposit(
    user_id: str,
    amount: int,
    *,
    reference: str,
    provider: PaymentsProvider | None = None,
) -> LedgerEntry:
    """Wallet top-up: charge the provider, then credit the user from clearing.

    Replaying a reference returns the original credit without charging again.
    """
    value = _positive_amount(amount)
    ref = (reference or "").strip()[:120]
    if not ref:
        raise ValidationError("reference required")
    existing = _existing_reference(user_id, ref, "deposit_credit")
    if existing is not None:
        return existing

    payments = provider or build_payments_provider()
    receipt = payments.charge(user_id=str(user_id), amount=value, currency=currency(), reference=ref)
    try:
        _, credit = _post_pair(
            debit_user=SYSTEM_CLEARING,
            credit_user=user_id,
            amount=value,
            reason="deposit",
            reference=ref,
        )
        log_event(
            "wallet_deposit",
            actor_id=user_id,
            subject_type="wallet",
            subject_id=user_id,
            idempotency_key=f"deposit:{user_id}:{ref}",
            metadata={"amount": value, "receipt_id": receipt.receipt_id, "provider": receipt.provider},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning("deposit_replay_race user=%s reference=%s", user_id, ref)
        existing = _existing_reference(user_id, ref, "deposit_credit")
        if existing is None:
            raise
        return existing
    logger.info("wallet_deposit user=%s amount=%s receipt=%s", user_id, value, receipt.receipt_id)
    return credit


def withdraw(
    user_id: str,
    amount: int,
    *,
    reference: str,
    provider: PaymentsProvider | None = None,
) -> LedgerEntry:
    """Pay out from the available balance, debiting the user to clearing."""
    value = _positive_amount(amount)
    ref = (reference or "").strip()[:120]
    if not ref:
        raise ValidationError("reference required")
    existing = _existing_reference(user_id, ref, "withdrawal_debit")
    if existing is not None:
        return existing

    with account_locks.hold(user_id):
        available = available_balance(user_id)
        if available < value:
            raise InsufficientFunds(str(user_id), value, available)
        payments = provider or build_payments_provider()
        receipt = payments.payout(user_id=str(user_id), amount=value, currency=currency(), reference=ref)
        try:
            debit, _ = _post_pair(
                debit_user=user_id,
                credit_user=SYSTEM_CLEARING,
                amount=value,
                reason="withdrawal",
                reference=ref,
            )
            log_event(
                "wallet_withdrawal",
                actor_id=user_id,
                subject_type="wallet",
                subject_id=user_id,
                idempotency_key=f"withdraw:{user_id}:{ref}",
                metadata={"amount": value, "receipt_id": receipt.receipt_id, "provider": receipt.provider},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.error("withdrawal_post_failed user=%s reference=%s receipt=%s", user_id, ref, receipt.receipt_id)
            raise
    logger.info("wallet_withdrawal user=%s amount=%s receipt=%s", user_id, value, receipt.receipt_id)
    return debit
