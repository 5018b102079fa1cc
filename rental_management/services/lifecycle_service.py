from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from models.rental_models import Rental
from services.access_service import permission_for_transition, require_permission
from services.checklist_service import collection_ready
from services.errors import IllegalTransition, PreconditionNotMet
from services.events import RentalStatusChanged
from services.store_service import check_version, commit_unit, enqueue_events, increment_stock, log_audit

logger = logging.getLogger("rental_management.lifecycle")

STATUS_FLOW = ["pending", "awaiting_payment", "confirmed", "ongoing", "collecting", "finished"]
TERMINAL_STATES = {"finished", "cancelled"}
ALL_STATES = set(STATUS_FLOW) | TERMINAL_STATES
STATE_TRANSITIONS = {
    "pending": {"awaiting_payment", "confirmed", "cancelled"},
    "awaiting_payment": {"confirmed", "cancelled"},
    "confirmed": {"ongoing", "cancelled"},
    "ongoing": {"collecting", "cancelled"},
    "collecting": {"finished", "cancelled"},
    "finished": set(),
    "cancelled": set(),
}
STATUS_LABELS = {
    "pending": "Pagamento Pendente",
    "awaiting_payment": "Aguardando Pagamento",
    "confirmed": "Aprovado",
    "ongoing": "Em Andamento",
    "collecting": "Recolher Material",
    "finished": "Contrato Expirado",
    "cancelled": "Cancelado",
}
PAID_STATUS = "PAGO"


@dataclass
class TransitionResult:
    rental: Rental
    previous_status: str
    events: list = field(default_factory=list)
    requires_reconciliation: bool = False


def next_status(current: str | None) -> str | None:
    """Next state in the forward flow; does not look at any precondition."""
    if current not in STATUS_FLOW:
        return None
    index = STATUS_FLOW.index(current)
    if index >= len(STATUS_FLOW) - 1:
        return None
    return STATUS_FLOW[index + 1]


def can_transition(current: str | None, target: str | None) -> bool:
    return target in STATE_TRANSITIONS.get(current or "", set())


def has_completed_payment(rental: Rental) -> bool:
    return any(payment.Status == PAID_STATUS for payment in rental.Payments or [])


def stage_transition(db: Session, rental: Rental, target_status: str, actor: str | None = None) -> TransitionResult:
    """Validate and apply a status change inside the caller's unit of work."""
    current = rental.Status
    if target_status not in ALL_STATES:
        raise IllegalTransition(f"Unknown status '{target_status}'.")
    if not can_transition(current, target_status):
        raise IllegalTransition(f"Invalid status transition: {current} -> {target_status}")

    if target_status == "confirmed" and not has_completed_payment(rental):
        raise IllegalTransition("A paid (PAGO) payment is required before the rental can be confirmed.")
    if target_status == "finished" and not collection_ready(rental):
        raise PreconditionNotMet("Complete the collection checklist before finishing the rental.")

    if target_status == "cancelled":
        for item in rental.ProductItems:
            increment_stock(db, item.ProductID, int(item.Quantity or 0))
    elif target_status == "finished":
        # Under-returned units stay out of stock for good.
        for item in rental.ChecklistItems:
            increment_stock(db, item.ProductID, int(item.QuantityCollected or 0))

    rental.Status = target_status
    rental.UpdatedDate = datetime.now()

    event = RentalStatusChanged(rental_id=rental.RentalID, from_status=current, to_status=target_status)
    enqueue_events(db, [event])
    log_audit(db, "Rental", rental.RentalID, "StatusChange", f"{current} -> {target_status}", actor=actor)
    logger.info("Rental %s moved %s -> %s", rental.RentalID, current, target_status)
    return TransitionResult(
        rental=rental,
        previous_status=current,
        events=[event],
        requires_reconciliation=target_status == "collecting",
    )


def apply_transition(
    db: Session,
    rental: Rental,
    target_status: str,
    role,
    expected_version: int | None = None,
) -> TransitionResult:
    resolved = require_permission(role, permission_for_transition(target_status))
    if target_status == "finished":
        raise IllegalTransition("Close a rental through finalize so its final values and return date are recorded.")
    check_version("Rental", rental.Version, expected_version)
    result = stage_transition(db, rental, target_status, actor=resolved.value)
    commit_unit(db)
    return result


def advance(db: Session, rental: Rental, role, expected_version: int | None = None) -> TransitionResult:
    target = next_status(rental.Status)
    if target is None:
        raise IllegalTransition(f"Rental in status '{rental.Status}' cannot advance.")
    return apply_transition(db, rental, target, role, expected_version)
