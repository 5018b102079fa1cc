from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models.rental_models import ChecklistItem, Rental
from services.access_service import require_permission
from services.errors import IllegalTransition, ValidationError
from services.events import ChecklistCompleted
from services.store_service import (
    check_version,
    commit_unit,
    enqueue_events,
    get_or_404,
    log_audit,
    read_with_retry,
    rollback_unit,
    translate_storage_error,
)

logger = logging.getLogger("rental_management.checklist")

COLLECTION_STATES = {"collecting"}


@dataclass
class CollectionResult:
    item: ChecklistItem
    warnings: list[str] = field(default_factory=list)
    events: list = field(default_factory=list)


def is_complete(items) -> bool:
    items = list(items or [])
    return len(items) > 0 and all(bool(item.Collected) for item in items)


def collection_ready(rental: Rental) -> bool:
    """True when the rental may be closed: nothing to collect, or everything collected."""
    if not rental.ProductItems:
        return True
    return is_complete(rental.ChecklistItems)


def list_checklist(db: Session, rental_id: int) -> list[ChecklistItem]:
    stmt = (
        select(ChecklistItem)
        .options(selectinload(ChecklistItem.Product))
        .where(ChecklistItem.RentalID == rental_id)
        .order_by(ChecklistItem.ChecklistItemID)
    )
    return list(read_with_retry(lambda: db.execute(stmt).scalars().all(), db))


def generate(db: Session, rental: Rental) -> list[ChecklistItem]:
    """Create the collection checklist once; later calls return the stored rows.

    Rows are only created once the rental is collecting, so they always match
    the final set of product line items.
    """
    existing = list_checklist(db, rental.RentalID)
    if existing or not rental.ProductItems or rental.Status not in COLLECTION_STATES:
        return existing

    for line in rental.ProductItems:
        rental.ChecklistItems.append(
            ChecklistItem(
                RentalID=rental.RentalID,
                ProductID=line.ProductID,
                QuantityExpected=int(line.Quantity or 0),
                QuantityCollected=0,
                Collected=False,
                CreatedDate=datetime.now(),
            )
        )
    try:
        db.flush()
    except IntegrityError:
        # Another request generated it first; keep theirs.
        rollback_unit(db)
        return list_checklist(db, rental.RentalID)
    except SQLAlchemyError as exc:
        rollback_unit(db)
        raise translate_storage_error(exc) from exc
    log_audit(db, "Rental", rental.RentalID, "GenerateChecklist", f"{len(rental.ProductItems)} items")
    commit_unit(db)
    logger.info("Generated checklist for rental %s (%s items)", rental.RentalID, len(rental.ProductItems))
    return list_checklist(db, rental.RentalID)


def _load_item(db: Session, item_id: int) -> ChecklistItem:
    item = get_or_404(db, ChecklistItem, item_id, "Checklist item")
    if item.Rental.Status not in COLLECTION_STATES:
        raise IllegalTransition(
            f"Items can only be collected while the rental is collecting (current: {item.Rental.Status})."
        )
    return item


def mark_collected(
    db: Session,
    item_id: int,
    collected_by: str | None,
    quantity_collected: int,
    role,
    expected_version: int | None = None,
    notes: str | None = None,
) -> CollectionResult:
    resolved = require_permission(role, "collectItems")
    collector = (collected_by or "").strip()
    if not collector:
        raise ValidationError("Inform who collected the item.")
    if quantity_collected is None or int(quantity_collected) < 0:
        raise ValidationError("Collected quantity cannot be negative.")

    item = _load_item(db, item_id)
    check_version("Checklist item", item.Version, expected_version)
    quantity = int(quantity_collected)
    if quantity > int(item.QuantityExpected or 0):
        raise ValidationError(
            f"Collected quantity ({quantity}) exceeds the expected quantity ({item.QuantityExpected})."
        )

    was_complete = is_complete(item.Rental.ChecklistItems)
    item.Collected = True
    item.CollectedAt = datetime.now()
    item.CollectedBy = collector
    item.QuantityCollected = quantity
    if notes is not None:
        item.Notes = notes

    result = CollectionResult(item=item)
    if quantity < int(item.QuantityExpected or 0):
        missing = int(item.QuantityExpected) - quantity
        result.warnings.append(
            f"{missing} unit(s) of product {item.ProductID} not returned ({quantity}/{item.QuantityExpected})."
        )
        logger.warning("Checklist item %s under-collected: %s/%s", item.ChecklistItemID, quantity, item.QuantityExpected)

    if not was_complete and is_complete(item.Rental.ChecklistItems):
        result.events.append(ChecklistCompleted(rental_id=item.RentalID))
        enqueue_events(db, result.events)

    log_audit(
        db,
        "ChecklistItem",
        item.ChecklistItemID,
        "Collect",
        f"{quantity}/{item.QuantityExpected} by {collector}",
        actor=resolved.value,
    )
    commit_unit(db)
    return result


def unmark(db: Session, item_id: int, role, expected_version: int | None = None) -> CollectionResult:
    resolved = require_permission(role, "collectItems")
    item = _load_item(db, item_id)
    check_version("Checklist item", item.Version, expected_version)

    item.Collected = False
    item.CollectedAt = None
    item.CollectedBy = None
    item.QuantityCollected = 0
    log_audit(db, "ChecklistItem", item.ChecklistItemID, "Unmark", None, actor=resolved.value)
    commit_unit(db)
    return CollectionResult(item=item)


def serialize_checklist_item(item: ChecklistItem) -> dict:
    return {
        "checklistItemID": item.ChecklistItemID,
        "rentalID": item.RentalID,
        "productID": item.ProductID,
        "quantityExpected": item.QuantityExpected,
        "quantityCollected": item.QuantityCollected,
        "collected": bool(item.Collected),
        "collectedAt": item.CollectedAt,
        "collectedBy": item.CollectedBy,
        "notes": item.Notes,
        "version": item.Version,
        "product": {
            "productID": item.Product.ProductID,
            "name": item.Product.Name,
            "description": item.Product.Description,
        } if item.Product else None,
    }


def summarize(items) -> dict:
    items = list(items or [])
    collected = [item for item in items if item.Collected]
    return {
        "totalItems": len(items),
        "collectedItems": len(collected),
        "isComplete": is_complete(items),
        "quantityExpected": sum(int(item.QuantityExpected or 0) for item in items),
        "quantityCollected": sum(int(item.QuantityCollected or 0) for item in collected),
    }
