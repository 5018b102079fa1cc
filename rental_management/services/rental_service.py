from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.rental_models import Customer, Product, Rental, RentalProductItem, RentalTentItem, Tent
from services.access_service import require_permission
from services.checklist_service import serialize_checklist_item, summarize
from services.duration_service import chargeable_days, running_metrics, validate_period
from services.errors import IllegalTransition, NotFound, RentalError, ValidationError
from services.lifecycle_service import TERMINAL_STATES
from services.store_service import (
    check_version,
    commit_unit,
    flush_unit,
    get_or_404,
    increment_stock,
    log_audit,
    read_with_retry,
    reserve_stock,
    rollback_unit,
)

logger = logging.getLogger("rental_management.rentals")

MUTABLE_ITEM_STATES = {"pending", "awaiting_payment", "confirmed"}
UPCOMING_STATES = ("pending", "awaiting_payment", "confirmed")


def generate_rental_number(db: Session, prefix: str = "ALG") -> str:
    token = (prefix or "ALG").upper()
    stmt = (
        select(Rental)
        .where(Rental.RentalNumber.like(f"{token}-%"))
        .order_by(Rental.RentalID.desc())
    )
    last = read_with_retry(lambda: db.execute(stmt).scalars().first(), db)
    next_number = 1
    if last and last.RentalNumber:
        raw = last.RentalNumber.replace(f"{token}-", "")
        try:
            next_number = int(raw) + 1
        except ValueError:
            next_number = 1
    return f"{token}-{next_number:03d}"


def recalc_quote(rental: Rental) -> None:
    """Refresh the per-day rate and the quoted total from the line items."""
    daily_rate = 0.0
    for item in list(rental.ProductItems) + list(rental.TentItems):
        daily_rate += float(item.UnitPrice or 0) * int(item.Quantity or 0)
    rental.DailyRate = daily_rate

    days = chargeable_days(rental.StartDate, rental.EndDate, rental.PricingPolicy or "business_days")
    subtotal = daily_rate * days
    rental.TotalValue = max(0.0, subtotal - float(rental.Discount or 0) + float(rental.DeliveryFee or 0))


def _require_non_negative(label: str, value) -> float:
    amount = float(value or 0)
    if amount < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return amount


def _require_quantity(value) -> int:
    quantity = int(value or 0)
    if quantity < 1:
        raise ValidationError("quantity must be at least 1.")
    return quantity


def _add_product_line(db: Session, rental: Rental, product_id: int, quantity: int, unit_price: float | None) -> RentalProductItem:
    product = get_or_404(db, Product, product_id, "Product")
    if not reserve_stock(db, product.ProductID, quantity):
        raise ValidationError(
            f"Insufficient stock for {product.Name}. Available: {int(product.TotalStock or 0)}"
        )
    price = float(unit_price) if unit_price is not None else float(product.DailyRentalPrice or 0)
    line = RentalProductItem(
        ProductID=product.ProductID,
        Quantity=quantity,
        UnitPrice=_require_non_negative("unitPrice", price),
    )
    line.Product = product
    rental.ProductItems.append(line)
    return line


def create_rental(db: Session, payload, role) -> Rental:
    resolved = require_permission(role, "manageRentals")
    validate_period(payload.startDate, payload.endDate)
    customer = get_or_404(db, Customer, payload.customerID, "Customer")
    if not payload.productItems and not payload.tentItems:
        raise ValidationError("A rental needs at least one product or tent item.")

    rental = Rental(
        RentalNumber=generate_rental_number(db),
        Status="pending",
        StartDate=payload.startDate,
        EndDate=payload.endDate,
        InstallationDate=payload.installationDate,
        InstallationTime=payload.installationTime,
        PricingPolicy=payload.pricingPolicy,
        Discount=_require_non_negative("discount", payload.discount),
        DeliveryFee=_require_non_negative("deliveryFee", payload.deliveryFee),
        Notes=payload.notes,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    rental.Customer = customer

    try:
        requested: dict[int, dict] = {}
        for item in payload.productItems:
            entry = requested.setdefault(item.productID, {"quantity": 0, "unitPrice": item.unitPrice})
            entry["quantity"] += _require_quantity(item.quantity)
        for product_id, entry in requested.items():
            _add_product_line(db, rental, product_id, entry["quantity"], entry["unitPrice"])

        for item in payload.tentItems:
            tent = get_or_404(db, Tent, item.tentID, "Tent")
            price = float(item.unitPrice) if item.unitPrice is not None else float(tent.DailyPrice or 0)
            line = RentalTentItem(
                TentID=tent.TentID,
                Quantity=_require_quantity(item.quantity),
                UnitPrice=_require_non_negative("unitPrice", price),
            )
            line.Tent = tent
            rental.TentItems.append(line)

        recalc_quote(rental)
        db.add(rental)
        flush_unit(db)
        log_audit(db, "Rental", rental.RentalID, "CreateRental", f"Quoted {rental.TotalValue:.2f}", actor=resolved.value)
    except RentalError:
        rollback_unit(db)
        raise
    commit_unit(db)
    logger.info("Created rental %s (%s) total %.2f", rental.RentalID, rental.RentalNumber, rental.TotalValue)
    return rental


def _require_mutable(rental: Rental) -> None:
    if rental.Status not in MUTABLE_ITEM_STATES:
        raise IllegalTransition(f"Line items cannot change while the rental is '{rental.Status}'.")


def add_product_item(db: Session, rental: Rental, payload, role, expected_version: int | None = None) -> Rental:
    resolved = require_permission(role, "manageRentals")
    check_version("Rental", rental.Version, expected_version)
    _require_mutable(rental)
    quantity = _require_quantity(payload.quantity)
    if any(item.ProductID == payload.productID for item in rental.ProductItems):
        raise ValidationError(f"Product {payload.productID} is already on this rental; remove it first.")

    try:
        _add_product_line(db, rental, payload.productID, quantity, payload.unitPrice)
        recalc_quote(rental)
        rental.UpdatedDate = datetime.now()
        log_audit(db, "Rental", rental.RentalID, "AddProductItem", f"product={payload.productID} qty={quantity}", actor=resolved.value)
    except RentalError:
        rollback_unit(db)
        raise
    commit_unit(db)
    return rental


def remove_product_item(db: Session, rental: Rental, item_id: int, role, expected_version: int | None = None) -> Rental:
    resolved = require_permission(role, "manageRentals")
    check_version("Rental", rental.Version, expected_version)
    _require_mutable(rental)
    line = next((item for item in rental.ProductItems if item.RentalProductItemID == item_id), None)
    if line is None:
        raise NotFound(f"Line item {item_id} not found on rental {rental.RentalID}")

    increment_stock(db, line.ProductID, int(line.Quantity or 0))
    rental.ProductItems.remove(line)
    recalc_quote(rental)
    rental.UpdatedDate = datetime.now()
    log_audit(db, "Rental", rental.RentalID, "RemoveProductItem", f"product={line.ProductID}", actor=resolved.value)
    commit_unit(db)
    return rental


def set_installation(db: Session, rental: Rental, installation_date: date, installation_time: str | None, role) -> Rental:
    resolved = require_permission(role, "advanceStatus")
    if rental.Status in {"finished", "cancelled"}:
        raise IllegalTransition("Installation cannot be scheduled on a closed rental.")
    if installation_date < rental.StartDate or installation_date > rental.EndDate:
        raise ValidationError("installationDate must fall within the rental period.")
    rental.InstallationDate = installation_date
    rental.InstallationTime = installation_time
    rental.UpdatedDate = datetime.now()
    log_audit(db, "Rental", rental.RentalID, "ScheduleInstallation", f"{installation_date} {installation_time or ''}".strip(), actor=resolved.value)
    commit_unit(db)
    return rental


RENTAL_FIELD_MAP = {
    "startDate": "StartDate",
    "endDate": "EndDate",
    "installationDate": "InstallationDate",
    "installationTime": "InstallationTime",
    "pricingPolicy": "PricingPolicy",
    "discount": "Discount",
    "deliveryFee": "DeliveryFee",
    "notes": "Notes",
}

QUOTE_FIELDS = {"startDate", "endDate", "pricingPolicy", "discount", "deliveryFee"}


def update_rental(db: Session, rental: Rental, payload, role, expected_version: int | None = None) -> Rental:
    """Partially update a rental's header fields.

    Dates, pricing policy, discount and delivery fee re-quote the rental and
    can only change while its line items are still mutable.
    """
    resolved = require_permission(role, "manageRentals")
    check_version("Rental", rental.Version, expected_version)
    if rental.Status in TERMINAL_STATES:
        raise IllegalTransition(f"A {rental.Status} rental cannot be edited.")

    changes = {
        field: value
        for field, value in payload.model_dump(exclude_unset=True).items()
        if field in RENTAL_FIELD_MAP
    }
    requoted = QUOTE_FIELDS.intersection(changes)
    if requoted and rental.Status not in MUTABLE_ITEM_STATES:
        raise IllegalTransition(f"Dates and pricing cannot change while the rental is '{rental.Status}'.")
    for field in requoted:
        if changes[field] is None:
            raise ValidationError(f"{field} cannot be empty.")
    for field in ("discount", "deliveryFee"):
        if field in changes:
            changes[field] = _require_non_negative(field, changes[field])

    start = changes.get("startDate", rental.StartDate)
    end = changes.get("endDate", rental.EndDate)
    validate_period(start, end)
    installation = changes.get("installationDate", rental.InstallationDate)
    if installation is not None and (installation < start or installation > end):
        raise ValidationError("installationDate must fall within the rental period.")

    for field, value in changes.items():
        setattr(rental, RENTAL_FIELD_MAP[field], value)
    if requoted:
        recalc_quote(rental)
    rental.UpdatedDate = datetime.now()
    log_audit(db, "Rental", rental.RentalID, "UpdateRental", ",".join(sorted(changes)) or None, actor=resolved.value)
    commit_unit(db)
    return rental


def delete_rental(db: Session, rental: Rental, role) -> None:
    """Delete a rental with its line items, checklist, payments and contract.

    Booked stock goes back to the catalog unless the rental already released it.
    """
    resolved = require_permission(role, "manageRentals")
    rental_id = rental.RentalID
    try:
        if rental.Status not in TERMINAL_STATES:
            for line in rental.ProductItems:
                increment_stock(db, line.ProductID, int(line.Quantity or 0))
        log_audit(db, "Rental", rental_id, "DeleteRental", f"{rental.RentalNumber} ({rental.Status})", actor=resolved.value)
        db.delete(rental)
    except RentalError:
        rollback_unit(db)
        raise
    commit_unit(db)
    logger.info("Deleted rental %s", rental_id)


def list_rentals(db: Session, status: str | None = None, customer_id: int | None = None) -> list[Rental]:
    stmt = (
        select(Rental)
        .options(selectinload(Rental.Customer))
        .options(selectinload(Rental.ProductItems).selectinload(RentalProductItem.Product))
        .options(selectinload(Rental.TentItems).selectinload(RentalTentItem.Tent))
        .order_by(Rental.CreatedDate.desc(), Rental.RentalID.desc())
    )
    if status:
        stmt = stmt.where(Rental.Status == status)
    if customer_id is not None:
        stmt = stmt.where(Rental.CustomerID == customer_id)
    return list(read_with_retry(lambda: db.execute(stmt).scalars().all(), db))


def list_upcoming_rentals(db: Session, today: date | None = None, limit: int = 5) -> list[Rental]:
    today = today or date.today()
    stmt = (
        select(Rental)
        .options(selectinload(Rental.Customer))
        .options(selectinload(Rental.ProductItems).selectinload(RentalProductItem.Product))
        .options(selectinload(Rental.TentItems).selectinload(RentalTentItem.Tent))
        .where(Rental.StartDate >= today)
        .where(Rental.Status.in_(UPCOMING_STATES))
        .order_by(Rental.StartDate, Rental.RentalID)
        .limit(max(1, limit))
    )
    return list(read_with_retry(lambda: db.execute(stmt).scalars().all(), db))


def serialize_line_items(rental: Rental) -> list[dict]:
    lines = []
    for item in rental.ProductItems:
        lines.append(
            {
                "kind": "product",
                "itemID": item.RentalProductItemID,
                "catalogID": item.ProductID,
                "name": item.Product.Name if item.Product else None,
                "quantity": item.Quantity,
                "unitPrice": item.UnitPrice,
                "dailyTotal": float(item.UnitPrice or 0) * int(item.Quantity or 0),
            }
        )
    for item in rental.TentItems:
        lines.append(
            {
                "kind": "tent",
                "itemID": item.RentalTentItemID,
                "catalogID": item.TentID,
                "name": item.Tent.Name if item.Tent else None,
                "quantity": item.Quantity,
                "unitPrice": item.UnitPrice,
                "dailyTotal": float(item.UnitPrice or 0) * int(item.Quantity or 0),
            }
        )
    return lines


def serialize_rental(rental: Rental, include_metrics: bool = True, today: date | None = None) -> dict:
    payload = {
        "rentalID": rental.RentalID,
        "rentalNumber": rental.RentalNumber,
        "customerID": rental.CustomerID,
        "customer": {
            "customerID": rental.Customer.CustomerID,
            "name": rental.Customer.Name,
            "document": rental.Customer.Document,
            "phone": rental.Customer.Phone,
            "email": rental.Customer.Email,
            "address": rental.Customer.Address,
        } if rental.Customer else None,
        "status": rental.Status,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "installationDate": rental.InstallationDate,
        "installationTime": rental.InstallationTime,
        "actualReturnDate": rental.ActualReturnDate,
        "pricingPolicy": rental.PricingPolicy,
        "dailyRate": rental.DailyRate,
        "discount": rental.Discount,
        "deliveryFee": rental.DeliveryFee,
        "totalValue": rental.TotalValue,
        "notes": rental.Notes,
        "version": rental.Version,
        "createdDate": rental.CreatedDate,
        "updatedDate": rental.UpdatedDate,
        "lineItems": serialize_line_items(rental),
    }
    if include_metrics:
        payload["metrics"] = running_metrics(rental, today)
        payload["checklist"] = summarize(rental.ChecklistItems)
        payload["checklistItems"] = [serialize_checklist_item(item) for item in rental.ChecklistItems]
    return payload
