from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from models.rental_models import ChecklistItem, Customer, Product, Rental, RentalProductItem, RentalTentItem, Tent
from services.access_service import require_permission
from services.errors import ConcurrentModification, PreconditionNotMet, ValidationError
from services.store_service import (
    commit_unit,
    execute_write,
    flush_unit,
    get_or_404,
    log_audit,
    read_with_retry,
    rollback_unit,
)


def _clean_name(raw: str | None, label: str) -> str:
    name = (raw or "").strip()
    if not name:
        raise ValidationError(f"{label} name is required.")
    return name


def _non_negative(value, label: str):
    if value is not None and value < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return value


def create_customer(db: Session, payload, role) -> Customer:
    resolved = require_permission(role, "manageCustomers")
    customer = Customer(
        Name=_clean_name(payload.name, "Customer"),
        Document=payload.document,
        Phone=payload.phone,
        Email=payload.email,
        Address=payload.address,
        CreatedDate=datetime.now(),
    )
    db.add(customer)
    flush_unit(db)
    log_audit(db, "Customer", customer.CustomerID, "CreateCustomer", customer.Name, actor=resolved.value)
    commit_unit(db)
    return customer


def create_product(db: Session, payload, role) -> Product:
    resolved = require_permission(role, "manageCatalog")
    product = Product(
        Name=_clean_name(payload.name, "Product"),
        Description=payload.description,
        DailyRentalPrice=_non_negative(payload.dailyRentalPrice, "dailyRentalPrice"),
        TotalStock=_non_negative(payload.totalStock, "totalStock"),
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(product)
    flush_unit(db)
    log_audit(db, "Product", product.ProductID, "CreateProduct", product.Name, actor=resolved.value)
    commit_unit(db)
    return product


def create_tent(db: Session, payload, role) -> Tent:
    resolved = require_permission(role, "manageCatalog")
    tent = Tent(
        Name=_clean_name(payload.name, "Tent"),
        Size=payload.size,
        DailyPrice=_non_negative(payload.dailyPrice, "dailyPrice"),
        TotalStock=_non_negative(payload.totalStock, "totalStock"),
        CreatedDate=datetime.now(),
    )
    db.add(tent)
    flush_unit(db)
    log_audit(db, "Tent", tent.TentID, "CreateTent", tent.Name, actor=resolved.value)
    commit_unit(db)
    return tent


CUSTOMER_FIELD_MAP = {
    "name": "Name",
    "document": "Document",
    "phone": "Phone",
    "email": "Email",
    "address": "Address",
}

PRODUCT_FIELD_MAP = {
    "name": "Name",
    "description": "Description",
    "dailyRentalPrice": "DailyRentalPrice",
}

TENT_FIELD_MAP = {
    "name": "Name",
    "size": "Size",
    "dailyPrice": "DailyPrice",
    "totalStock": "TotalStock",
}


def _apply_changes(entity, changes: dict, field_map: dict, label: str) -> list[str]:
    cleaned = {}
    for field, value in changes.items():
        if field not in field_map:
            continue
        if field == "name":
            value = _clean_name(value, label)
        elif field in {"dailyRentalPrice", "dailyPrice", "totalStock"}:
            if value is None:
                raise ValidationError(f"{field} cannot be empty.")
            value = _non_negative(value, field)
        cleaned[field] = value
    for field, value in cleaned.items():
        setattr(entity, field_map[field], value)
    return list(cleaned)


def _reference_count(db: Session, model, column, identifier: int) -> int:
    stmt = select(func.count()).select_from(model).where(column == identifier)
    return int(read_with_retry(lambda: db.execute(stmt).scalar(), db) or 0)


def update_customer(db: Session, customer_id: int, payload, role) -> Customer:
    resolved = require_permission(role, "manageCustomers")
    customer = get_or_404(db, Customer, customer_id, "Customer")
    applied = _apply_changes(customer, payload.model_dump(exclude_unset=True), CUSTOMER_FIELD_MAP, "Customer")
    log_audit(db, "Customer", customer.CustomerID, "UpdateCustomer", ",".join(applied) or None, actor=resolved.value)
    commit_unit(db)
    return customer


def delete_customer(db: Session, customer_id: int, role) -> None:
    resolved = require_permission(role, "manageCustomers")
    customer = get_or_404(db, Customer, customer_id, "Customer")
    rentals = _reference_count(db, Rental, Rental.CustomerID, customer_id)
    if rentals:
        raise PreconditionNotMet(f"Customer {customer.Name} has {rentals} rentals and cannot be deleted.")
    log_audit(db, "Customer", customer_id, "DeleteCustomer", customer.Name, actor=resolved.value)
    db.delete(customer)
    commit_unit(db)


def update_product(db: Session, product_id: int, payload, role) -> Product:
    """Edit a catalog product.

    Stock is written with a compare-and-set on the value that was read, so a
    reservation landing in between is never overwritten.
    """
    resolved = require_permission(role, "manageCatalog")
    product = get_or_404(db, Product, product_id, "Product")
    changes = payload.model_dump(exclude_unset=True)
    new_stock = None
    if "totalStock" in changes:
        if changes["totalStock"] is None:
            raise ValidationError("totalStock cannot be empty.")
        new_stock = _non_negative(changes["totalStock"], "totalStock")
    applied = _apply_changes(product, changes, PRODUCT_FIELD_MAP, "Product")

    if new_stock is not None:
        result = execute_write(
            db,
            update(Product)
            .where(Product.ProductID == product_id)
            .where(Product.TotalStock == product.TotalStock)
            .values(TotalStock=new_stock),
        )
        if result.rowcount != 1:
            rollback_unit(db)
            raise ConcurrentModification("Product stock changed while it was being edited. Reload and try again.")
        applied.append("totalStock")

    product.UpdatedDate = datetime.now()
    log_audit(db, "Product", product.ProductID, "UpdateProduct", ",".join(applied) or None, actor=resolved.value)
    commit_unit(db)
    read_with_retry(lambda: db.refresh(product), db)
    return product


def delete_product(db: Session, product_id: int, role) -> None:
    resolved = require_permission(role, "manageCatalog")
    product = get_or_404(db, Product, product_id, "Product")
    in_use = _reference_count(db, RentalProductItem, RentalProductItem.ProductID, product_id)
    in_use += _reference_count(db, ChecklistItem, ChecklistItem.ProductID, product_id)
    if in_use:
        raise PreconditionNotMet(f"Product {product.Name} is referenced by rentals and cannot be deleted.")
    log_audit(db, "Product", product_id, "DeleteProduct", product.Name, actor=resolved.value)
    db.delete(product)
    commit_unit(db)


def update_tent(db: Session, tent_id: int, payload, role) -> Tent:
    resolved = require_permission(role, "manageCatalog")
    tent = get_or_404(db, Tent, tent_id, "Tent")
    applied = _apply_changes(tent, payload.model_dump(exclude_unset=True), TENT_FIELD_MAP, "Tent")
    log_audit(db, "Tent", tent.TentID, "UpdateTent", ",".join(applied) or None, actor=resolved.value)
    commit_unit(db)
    return tent


def delete_tent(db: Session, tent_id: int, role) -> None:
    resolved = require_permission(role, "manageCatalog")
    tent = get_or_404(db, Tent, tent_id, "Tent")
    if _reference_count(db, RentalTentItem, RentalTentItem.TentID, tent_id):
        raise PreconditionNotMet(f"Tent {tent.Name} is referenced by rentals and cannot be deleted.")
    log_audit(db, "Tent", tent_id, "DeleteTent", tent.Name, actor=resolved.value)
    db.delete(tent)
    commit_unit(db)


def list_customers(db: Session) -> list[Customer]:
    return list(read_with_retry(lambda: db.execute(select(Customer).order_by(Customer.Name)).scalars().all(), db))


def list_products(db: Session) -> list[Product]:
    return list(read_with_retry(lambda: db.execute(select(Product).order_by(Product.Name)).scalars().all(), db))


def list_tents(db: Session) -> list[Tent]:
    return list(read_with_retry(lambda: db.execute(select(Tent).order_by(Tent.Name)).scalars().all(), db))


def serialize_customer(customer: Customer) -> dict:
    return {
        "customerID": customer.CustomerID,
        "name": customer.Name,
        "document": customer.Document,
        "phone": customer.Phone,
        "email": customer.Email,
        "address": customer.Address,
        "createdDate": customer.CreatedDate,
    }


def serialize_product(product: Product) -> dict:
    return {
        "productID": product.ProductID,
        "name": product.Name,
        "description": product.Description,
        "dailyRentalPrice": product.DailyRentalPrice,
        "totalStock": product.TotalStock,
        "createdDate": product.CreatedDate,
        "updatedDate": product.UpdatedDate,
    }


def serialize_tent(tent: Tent) -> dict:
    return {
        "tentID": tent.TentID,
        "name": tent.Name,
        "size": tent.Size,
        "dailyPrice": tent.DailyPrice,
        "totalStock": tent.TotalStock,
        "createdDate": tent.CreatedDate,
    }
