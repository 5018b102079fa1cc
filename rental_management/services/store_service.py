from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Callable, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from models.rental_models import (
    AuditLog,
    ChecklistItem,
    NotificationQueue,
    Product,
    Rental,
    RentalProductItem,
    RentalTentItem,
)
from services.errors import ConcurrentModification, NotFound, StorageError, StorageTimeout

logger = logging.getLogger("rental_management.store")

T = TypeVar("T")

DEFAULT_READ_ATTEMPTS = 1 + int(os.environ.get("RENTAL_DB_READ_RETRIES") or "2")

# Set on Session.info once a statement-level write ran in the open unit of work.
_WRITES_KEY = "rental_pending_writes"


def translate_storage_error(exc: Exception) -> StorageError | ConcurrentModification:
    if isinstance(exc, StaleDataError):
        return ConcurrentModification("The record was changed by someone else. Reload and try again.")
    if isinstance(exc, IntegrityError):
        return ConcurrentModification("The write conflicts with a concurrent change. Reload and try again.")
    if isinstance(exc, PoolTimeoutError):
        return StorageTimeout("The data store did not respond in time.")
    return StorageError("The data store is unavailable. Try again later.")


def has_pending_writes(db: Session) -> bool:
    return bool(db.new or db.dirty or db.deleted or db.info.get(_WRITES_KEY))


def rollback_unit(db: Session) -> None:
    db.info.pop(_WRITES_KEY, None)
    db.rollback()


def read_with_retry(read: Callable[[], T], db: Session | None = None, attempts: int = DEFAULT_READ_ATTEMPTS) -> T:
    """Run an idempotent read, retrying storage failures a bounded number of times.

    A read inside a unit of work that already holds writes is not retried:
    the whole unit is rolled back and the translated error is raised.
    """
    attempts = max(1, attempts)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return read()
        except SQLAlchemyError as exc:
            last_error = exc
            if db is not None and has_pending_writes(db):
                logger.error("Read failed inside an open unit of work; rolling back: %s", exc)
                rollback_unit(db)
                break
            logger.warning("Read failed (attempt %s/%s): %s", attempt, attempts, exc)
            if db is not None:
                rollback_unit(db)
    raise translate_storage_error(last_error) from last_error


def commit_unit(db: Session) -> None:
    """Commit the pending unit of work, rolling everything back on failure.

    Writes are never retried here: a failed commit leaves nothing applied.
    """
    try:
        db.commit()
    except SQLAlchemyError as exc:
        rollback_unit(db)
        logger.exception("Commit failed; unit of work rolled back")
        raise translate_storage_error(exc) from exc
    db.info.pop(_WRITES_KEY, None)


def flush_unit(db: Session) -> None:
    try:
        db.flush()
    except SQLAlchemyError as exc:
        rollback_unit(db)
        raise translate_storage_error(exc) from exc


def execute_write(db: Session, statement):
    """Execute a statement-level write as part of the open unit of work."""
    try:
        result = db.execute(statement)
    except SQLAlchemyError as exc:
        rollback_unit(db)
        logger.error("Write failed; unit of work rolled back: %s", exc)
        raise translate_storage_error(exc) from exc
    db.info[_WRITES_KEY] = True
    return result


def check_version(label: str, current: int | None, expected: int | None) -> None:
    if expected is None:
        return
    if current != expected:
        raise ConcurrentModification(
            f"{label} was modified (version {current}, expected {expected}). Reload and try again."
        )


def load_rental(db: Session, rental_id: int) -> Rental:
    stmt = (
        select(Rental)
        .options(selectinload(Rental.Customer))
        .options(selectinload(Rental.ProductItems).selectinload(RentalProductItem.Product))
        .options(selectinload(Rental.TentItems).selectinload(RentalTentItem.Tent))
        .options(selectinload(Rental.ChecklistItems).selectinload(ChecklistItem.Product))
        .options(selectinload(Rental.Payments))
        .where(Rental.RentalID == rental_id)
    )
    rental = read_with_retry(lambda: db.execute(stmt).scalars().first(), db)
    if not rental:
        raise NotFound(f"Rental {rental_id} not found")
    return rental


def get_or_404(db: Session, model, identifier: int, label: str):
    entity = read_with_retry(lambda: db.get(model, identifier), db)
    if not entity:
        raise NotFound(f"{label} {identifier} not found")
    return entity


def increment_stock(db: Session, product_id: int, quantity: int) -> None:
    if quantity <= 0:
        return
    execute_write(
        db,
        update(Product)
        .where(Product.ProductID == product_id)
        .values(TotalStock=Product.TotalStock + quantity, UpdatedDate=datetime.now()),
    )


def reserve_stock(db: Session, product_id: int, quantity: int) -> bool:
    """Decrement stock only if enough units remain. Returns False when short."""
    result = execute_write(
        db,
        update(Product)
        .where(Product.ProductID == product_id)
        .where(Product.TotalStock >= quantity)
        .values(TotalStock=Product.TotalStock - quantity, UpdatedDate=datetime.now()),
    )
    return result.rowcount == 1


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, actor: str | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            Actor=actor,
            CreatedAt=datetime.now(),
        )
    )


def enqueue_events(db: Session, events: list) -> None:
    for event in events:
        db.add(
            NotificationQueue(
                RentalID=event.rental_id,
                NotificationType=event.event_type,
                Payload=json.dumps(event.to_payload(), ensure_ascii=True),
                CreatedAt=datetime.now(),
            )
        )
