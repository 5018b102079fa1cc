from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.rental_models import Contract, Rental
from services.access_service import require_permission
from services.billing_service import compute_final_values
from services.duration_service import chargeable_days
from services.errors import IllegalTransition, NotFound
from services.store_service import commit_unit, flush_unit, get_or_404, log_audit, read_with_retry

logger = logging.getLogger("rental_management.contracts")


def build_contract_items(rental: Rental) -> list[dict]:
    days = chargeable_days(rental.StartDate, rental.EndDate, rental.PricingPolicy or "business_days")
    items = []
    for line in list(rental.ProductItems) + list(rental.TentItems):
        catalog = getattr(line, "Product", None) or getattr(line, "Tent", None)
        daily_rate = float(line.UnitPrice or 0)
        quantity = int(line.Quantity or 0)
        items.append(
            {
                "name": catalog.Name if catalog else None,
                "quantity": quantity,
                "dailyRate": daily_rate,
                "days": days,
                "total": round(daily_rate * quantity * days, 2),
            }
        )
    return items


def _next_contract_number(db: Session) -> int:
    last = read_with_retry(lambda: db.execute(select(func.max(Contract.ContractNumber))).scalar(), db)
    return int(last or 0) + 1


def get_contract_for_rental(db: Session, rental_id: int) -> Contract | None:
    stmt = select(Contract).where(Contract.RentalID == rental_id)
    return read_with_retry(lambda: db.execute(stmt).scalars().first(), db)


def issue_contract(db: Session, rental: Rental, role) -> Contract:
    """Persist the contract record for a rental, snapshotting customer and items.

    A rental has at most one contract; issuing again returns the existing one.
    """
    resolved = require_permission(role, "manageRentals")
    if rental.Status == "cancelled":
        raise IllegalTransition("A cancelled rental cannot be issued a contract.")
    existing = get_contract_for_rental(db, rental.RentalID)
    if existing:
        return existing

    items = build_contract_items(rental)
    total_value = float(rental.TotalValue or 0)
    if rental.Status == "finished":
        total_value = compute_final_values(rental, rental.ActualReturnDate or rental.EndDate)["totalValue"]

    customer = rental.Customer
    contract = Contract(
        ContractNumber=_next_contract_number(db),
        RentalID=rental.RentalID,
        CustomerID=rental.CustomerID,
        GeneratedAt=datetime.now(),
        CustomerName=customer.Name,
        CustomerDocument=customer.Document,
        CustomerPhone=customer.Phone,
        CustomerAddress=customer.Address,
        StartDate=rental.StartDate,
        EndDate=rental.EndDate,
        TotalValue=total_value,
        EquipmentValue=round(sum(item["total"] for item in items), 2),
        ItemsJson=json.dumps(items, ensure_ascii=True),
        Notes=rental.Notes,
        CreatedDate=datetime.now(),
    )
    contract.Rental = rental
    db.add(contract)
    flush_unit(db)
    log_audit(db, "Contract", contract.ContractID, "IssueContract", f"#{contract.ContractNumber} for {rental.RentalNumber}", actor=resolved.value)
    commit_unit(db)
    logger.info("Issued contract #%s for rental %s", contract.ContractNumber, rental.RentalID)
    return contract


def list_contracts(db: Session) -> list[Contract]:
    stmt = select(Contract).order_by(Contract.ContractNumber.desc())
    return list(read_with_retry(lambda: db.execute(stmt).scalars().all(), db))


def delete_contract(db: Session, contract_id: int, role) -> None:
    resolved = require_permission(role, "manageRentals")
    contract = get_or_404(db, Contract, contract_id, "Contract")
    rental = contract.Rental
    log_audit(db, "Contract", contract_id, "DeleteContract", f"#{contract.ContractNumber}", actor=resolved.value)
    db.delete(contract)
    commit_unit(db)
    if rental is not None:
        db.expire(rental, ["Contract"])


def require_contract_for_rental(db: Session, rental_id: int) -> Contract:
    contract = get_contract_for_rental(db, rental_id)
    if not contract:
        raise NotFound(f"No contract issued for rental {rental_id}")
    return contract


def serialize_contract(contract: Contract) -> dict:
    return {
        "contractID": contract.ContractID,
        "contractNumber": contract.ContractNumber,
        "rentalID": contract.RentalID,
        "customerID": contract.CustomerID,
        "generatedAt": contract.GeneratedAt,
        "customerName": contract.CustomerName,
        "customerDocument": contract.CustomerDocument,
        "customerPhone": contract.CustomerPhone,
        "customerAddress": contract.CustomerAddress,
        "startDate": contract.StartDate,
        "endDate": contract.EndDate,
        "totalValue": contract.TotalValue,
        "equipmentValue": contract.EquipmentValue,
        "items": json.loads(contract.ItemsJson) if contract.ItemsJson else [],
        "notes": contract.Notes,
    }
