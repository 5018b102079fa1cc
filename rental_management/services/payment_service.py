from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import Payment, Rental
from services.access_service import require_permission
from services.errors import IllegalTransition, PreconditionNotMet, RentalError, ValidationError
from services.lifecycle_service import PAID_STATUS, TransitionResult, stage_transition
from services.store_service import (
    check_version,
    commit_unit,
    get_or_404,
    log_audit,
    read_with_retry,
    rollback_unit,
)

logger = logging.getLogger("rental_management.payments")

PAYMENT_METHODS = {"PIX", "DINHEIRO", "CARTAO", "BOLETO", "TRANSFERENCIA"}
PENDING_STATUS = "PENDENTE"
OVERDUE_STATUS = "ATRASADO"
UNPAID_RENTAL_STATES = {"pending", "awaiting_payment"}
PAYMENT_STATUSES = {PAID_STATUS, PENDING_STATUS, OVERDUE_STATUS}


def confirm_payment(
    db: Session,
    rental: Rental,
    role,
    method: str = "PIX",
    paid_date: date | None = None,
    notes: str | None = None,
    expected_version: int | None = None,
) -> TransitionResult:
    """Record the rental as paid and move it to ``confirmed`` in one unit of work."""
    resolved = require_permission(role, "managePayments")
    check_version("Rental", rental.Version, expected_version)
    method = (method or "").strip().upper()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method '{method}'.")
    if rental.Status not in UNPAID_RENTAL_STATES:
        raise IllegalTransition(f"Payment cannot be confirmed while the rental is '{rental.Status}'.")

    payment = Payment(
        DueDate=rental.StartDate,
        PaidDate=paid_date or date.today(),
        Amount=float(rental.TotalValue or 0),
        Method=method,
        Status=PAID_STATUS,
        Notes=notes,
        CreatedDate=datetime.now(),
    )
    try:
        rental.Payments.append(payment)
        result = stage_transition(db, rental, "confirmed", actor=resolved.value)
        log_audit(db, "Rental", rental.RentalID, "ConfirmPayment", f"{payment.Amount:.2f} via {method}", actor=resolved.value)
    except RentalError:
        rollback_unit(db)
        raise
    commit_unit(db)
    logger.info("Payment of %.2f confirmed for rental %s", payment.Amount, rental.RentalID)
    return result


def defer_payment(db: Session, rental: Rental, role, expected_version: int | None = None) -> TransitionResult:
    resolved = require_permission(role, "managePayments")
    check_version("Rental", rental.Version, expected_version)
    result = stage_transition(db, rental, "awaiting_payment", actor=resolved.value)
    commit_unit(db)
    return result


def record_payment(db: Session, rental: Rental, payload, role) -> Payment:
    """Register an installment that is not settled yet (or settled outside the confirm flow)."""
    resolved = require_permission(role, "managePayments")
    method = (payload.method or "").strip().upper()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"Unknown payment method '{method}'.")
    if float(payload.amount) <= 0:
        raise ValidationError("amount must be greater than zero.")
    status = PAID_STATUS if payload.paidDate else PENDING_STATUS
    payment = Payment(
        DueDate=payload.dueDate,
        PaidDate=payload.paidDate,
        Amount=float(payload.amount),
        Method=method,
        Status=status,
        Notes=payload.notes,
        CreatedDate=datetime.now(),
    )
    rental.Payments.append(payment)
    log_audit(db, "Rental", rental.RentalID, "RecordPayment", f"{payment.Amount:.2f} {status}", actor=resolved.value)
    commit_unit(db)
    return payment


def effective_status(payment: Payment, today: date | None = None) -> str:
    """Status as seen on ``today``: pending installments past their due date read as overdue."""
    today = today or date.today()
    if payment.Status == PENDING_STATUS and payment.DueDate and payment.DueDate < today:
        return OVERDUE_STATUS
    return payment.Status


def refresh_overdue(payments, today: date | None = None) -> int:
    """Flag pending payments whose due date has passed. Returns how many changed."""
    changed = 0
    for payment in payments:
        status = effective_status(payment, today)
        if status != payment.Status:
            payment.Status = status
            changed += 1
    return changed


def list_payments(db: Session) -> list[Payment]:
    return list(
        read_with_retry(lambda: db.execute(select(Payment).order_by(Payment.DueDate.desc())).scalars().all(), db)
    )


def mark_overdue_payments(db: Session, role, today: date | None = None) -> int:
    """Persist the overdue flag on pending installments past their due date."""
    resolved = require_permission(role, "managePayments")
    pending = list(
        read_with_retry(lambda: db.execute(select(Payment).where(Payment.Status == PENDING_STATUS)).scalars().all(), db)
    )
    changed = refresh_overdue(pending, today)
    if not changed:
        return 0
    log_audit(db, "Payment", 0, "MarkOverdue", f"{changed} payments", actor=resolved.value)
    commit_unit(db)
    logger.info("Marked %s payments overdue", changed)
    return changed


def update_payment_status(
    db: Session,
    payment_id: int,
    status: str,
    role,
    paid_date: date | None = None,
) -> Payment:
    """Settle, reopen or flag a single installment."""
    resolved = require_permission(role, "managePayments")
    status = (status or "").strip().upper()
    if status not in PAYMENT_STATUSES:
        raise ValidationError(f"Unknown payment status '{status}'.")
    payment = get_or_404(db, Payment, payment_id, "Payment")
    rental = payment.Rental

    if payment.Status == PAID_STATUS and status != PAID_STATUS and rental.Status not in UNPAID_RENTAL_STATES:
        other_paid = [p for p in rental.Payments if p is not payment and p.Status == PAID_STATUS]
        if not other_paid:
            raise PreconditionNotMet(
                f"Rental {rental.RentalNumber} is '{rental.Status}' and this is its only settled payment."
            )

    payment.Status = status
    payment.PaidDate = (paid_date or payment.PaidDate or date.today()) if status == PAID_STATUS else None
    log_audit(db, "Payment", payment.PaymentID, "UpdatePaymentStatus", status, actor=resolved.value)
    commit_unit(db)
    return payment


def financial_summary(db: Session, role, today: date | None = None) -> dict:
    require_permission(role, "viewFinancial")
    today = today or date.today()
    totals = {PAID_STATUS: 0.0, PENDING_STATUS: 0.0, OVERDUE_STATUS: 0.0}
    receivable = 0.0
    for payment in list_payments(db):
        amount = float(payment.Amount or 0)
        receivable += amount
        status = effective_status(payment, today)
        totals[status] = totals.get(status, 0.0) + amount
    return {
        "totalReceivable": receivable,
        "totalPaid": totals[PAID_STATUS],
        "totalPending": totals[PENDING_STATUS],
        "totalOverdue": totals[OVERDUE_STATUS],
    }


def serialize_payment(payment: Payment, today: date | None = None) -> dict:
    return {
        "paymentID": payment.PaymentID,
        "rentalID": payment.RentalID,
        "dueDate": payment.DueDate,
        "paidDate": payment.PaidDate,
        "amount": payment.Amount,
        "method": payment.Method,
        "status": effective_status(payment, today),
        "notes": payment.Notes,
        "createdDate": payment.CreatedDate,
    }
