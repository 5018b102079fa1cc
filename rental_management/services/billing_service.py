from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy.orm import Session

from models.rental_models import Rental
from services.access_service import require_permission
from services.checklist_service import collection_ready, summarize
from services.duration_service import calendar_days_inclusive, extra_days
from services.errors import IllegalTransition, PreconditionNotMet, RentalError, ValidationError
from services.events import RentalFinalized
from services.lifecycle_service import stage_transition
from services.rental_service import serialize_line_items, serialize_rental
from services.store_service import check_version, commit_unit, enqueue_events, log_audit, rollback_unit

logger = logging.getLogger("rental_management.billing")


@dataclass
class FinalizationResult:
    rental: Rental
    final_values: dict
    events: list = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def compute_final_values(rental: Rental, actual_return_date: date | None = None) -> dict:
    """Settlement amounts for closing the contract on ``actual_return_date``.

    The stored quote is never corrected here; a difference is only reported.
    """
    returned_on = actual_return_date or date.today()
    if returned_on < rental.StartDate:
        raise ValidationError("Return date cannot be before the rental start date.")

    planned = calendar_days_inclusive(rental.StartDate, rental.EndDate)
    actual = calendar_days_inclusive(rental.StartDate, returned_on)
    extra = extra_days(rental.EndDate, returned_on)

    daily_rate = float(rental.DailyRate or 0)
    discount = float(rental.Discount or 0)
    delivery_fee = float(rental.DeliveryFee or 0)
    base_value = daily_rate * planned
    extra_value = daily_rate * extra
    total_value = max(0.0, base_value + extra_value - discount + delivery_fee)
    original_total = float(rental.TotalValue or 0)
    variance = round(total_value - original_total, 2)

    if variance != 0:
        logger.warning(
            "Rental %s settles at %.2f, quoted %.2f (variance %.2f)",
            rental.RentalID,
            total_value,
            original_total,
            variance,
        )

    return {
        "returnDate": returned_on,
        "plannedDays": planned,
        "actualDays": actual,
        "extraDays": extra,
        "dailyRate": daily_rate,
        "baseValue": base_value,
        "extraValue": extra_value,
        "discount": discount,
        "deliveryFee": delivery_fee,
        "totalValue": total_value,
        "originalTotal": original_total,
        "variance": variance,
        "hasVariance": variance != 0,
    }


def finalize(
    db: Session,
    rental: Rental,
    role,
    actual_return_date: date | None = None,
    expected_version: int | None = None,
    return_notes: str | None = None,
) -> FinalizationResult:
    resolved = require_permission(role, "finalizeRentals")
    check_version("Rental", rental.Version, expected_version)
    if rental.Status != "collecting":
        raise IllegalTransition(f"Only rentals in 'collecting' can be finalized (current: {rental.Status}).")
    if not collection_ready(rental):
        summary = summarize(rental.ChecklistItems)
        raise PreconditionNotMet(
            "Complete the collection checklist before finalizing "
            f"({summary['collectedItems']}/{summary['totalItems']} items collected)."
        )

    final_values = compute_final_values(rental, actual_return_date)
    result = FinalizationResult(rental=rental, final_values=final_values)
    if final_values["hasVariance"]:
        result.warnings.append(
            f"Final value {final_values['totalValue']:.2f} differs from the quoted {final_values['originalTotal']:.2f}."
        )

    try:
        transition = stage_transition(db, rental, "finished", actor=resolved.value)
        rental.ActualReturnDate = final_values["returnDate"]
        if return_notes:
            rental.Notes = (rental.Notes + "\n" if rental.Notes else "") + return_notes
        rental.UpdatedDate = datetime.now()
        finalized = RentalFinalized(rental_id=rental.RentalID, total_value=final_values["totalValue"])
        enqueue_events(db, [finalized])
        log_audit(
            db,
            "Rental",
            rental.RentalID,
            "Finalize",
            f"Settled {final_values['totalValue']:.2f} on {final_values['returnDate']}",
            actor=resolved.value,
        )
    except RentalError:
        rollback_unit(db)
        raise
    commit_unit(db)

    result.events = transition.events + [finalized]
    logger.info("Rental %s finalized with total %.2f", rental.RentalID, final_values["totalValue"])
    return result


def build_contract_payload(rental: Rental, final_values: dict | None = None) -> dict:
    """Input for the external contract / receipt generator."""
    return {
        "rental": serialize_rental(rental, include_metrics=False),
        "lineItems": serialize_line_items(rental),
        "finalValues": final_values,
    }
