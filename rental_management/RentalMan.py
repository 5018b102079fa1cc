import logging
import os
from datetime import date

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_rental_db
from schemas.catalog import CustomerCreate, CustomerUpdate, ProductCreate, ProductUpdate, TentCreate, TentUpdate
from schemas.rentals import (
    AddProductItemRequest,
    ConfirmPaymentRequest,
    CreateRentalDto,
    FinalizeRequest,
    InstallationRequest,
    MarkCollectedRequest,
    PaymentStatusRequest,
    RecordPaymentRequest,
    StatusChangeRequest,
    UpdateRentalRequest,
    VersionedRequest,
)
from services import (
    billing_service,
    checklist_service,
    contract_service,
    lifecycle_service,
    payment_service,
    rental_service,
)
from services.catalog_service import (
    create_customer,
    create_product,
    create_tent,
    delete_customer,
    delete_product,
    delete_tent,
    list_customers,
    list_products,
    list_tents,
    serialize_customer,
    serialize_product,
    serialize_tent,
    update_customer,
    update_product,
    update_tent,
)
from services.duration_service import running_metrics
from services.errors import RentalError, StorageError
from services.events import serialize_events
from services.store_service import load_rental

API_LOGGER = logging.getLogger("rental_management.api")

app = FastAPI(title="Rental Management")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RentalError)
async def rental_error_handler(request: Request, exc: RentalError) -> JSONResponse:
    if isinstance(exc, StorageError):
        API_LOGGER.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message)
    else:
        API_LOGGER.info("Rejected %s %s: %s (%s)", request.method, request.url.path, exc.message, exc.kind)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.kind})


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/customers")
def get_customers(db: Session = Depends(get_rental_db)):
    return [serialize_customer(customer) for customer in list_customers(db)]


@app.post("/api/customers")
def post_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    return serialize_customer(create_customer(db, payload, x_user_role))


@app.put("/api/customers/{customer_id}")
def put_customer(
    customer_id: int,
    payload: CustomerUpdate,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    return serialize_customer(update_customer(db, customer_id, payload, x_user_role))


@app.delete("/api/customers/{customer_id}")
def remove_customer(
    customer_id: int,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    delete_customer(db, customer_id, x_user_role)
    return {"message": "Deleted"}


@app.get("/api/customers/{customer_id}/rentals")
def get_customer_rentals(customer_id: int, db: Session = Depends(get_rental_db)):
    rentals = rental_service.list_rentals(db, customer_id=customer_id)
    return [rental_service.serialize_rental(rental, include_metrics=False) for rental in rentals]


@app.get("/api/products")
def get_products(db: Session = Depends(get_rental_db)):
    return [serialize_product(product) for product in list_products(db)]


@app.post("/api/products")
def post_product(
    payload: ProductCreate,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    return serialize_product(create_product(db, payload, x_user_role))


@app.put("/api/products/{product_id}")
def put_product(
    product_id: int,
    payload: ProductUpdate,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    return serialize_product(update_product(db, product_id, payload, x_user_role))


@app.delete("/api/products/{product_id}")
def remove_product(
    product_id: int,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    delete_product(db, product_id, x_user_role)
    return {"message": "Deleted"}


@app.get("/api/tents")
def get_tents(db: Session = Depends(get_rental_db)):
    return [serialize_tent(tent) for tent in list_tents(db)]


@app.post("/api/tents")
def post_tent(
    payload: TentCreate,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    return serialize_tent(create_tent(db, payload, x_user_role))


@app.put("/api/tents/{tent_id}")
def put_tent(
    tent_id: int,
    payload: TentUpdate,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    return serialize_tent(update_tent(db, tent_id, payload, x_user_role))


@app.delete("/api/tents/{tent_id}")
def remove_tent(
    tent_id: int,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    delete_tent(db, tent_id, x_user_role)
    return {"message": "Deleted"}


@app.get("/api/rentals")
def get_rentals(status: str | None = Query(None), db: Session = Depends(get_rental_db)):
    return [rental_service.serialize_rental(rental) for rental in rental_service.list_rentals(db, status)]


@app.post("/api/rentals")
def create_rental(
    payload: CreateRentalDto,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = rental_service.create_rental(db, payload, x_user_role)
    return rental_service.serialize_rental(load_rental(db, rental.RentalID))


@app.get("/api/rentals/upcoming")
def get_upcoming_rentals(
    limit: int = Query(5, ge=1, le=50),
    today: date | None = Query(None),
    db: Session = Depends(get_rental_db),
):
    rentals = rental_service.list_upcoming_rentals(db, today=today, limit=limit)
    return [rental_service.serialize_rental(rental, include_metrics=False) for rental in rentals]


@app.get("/api/rentals/{rental_id}")
def get_rental(rental_id: int, db: Session = Depends(get_rental_db)):
    rental = load_rental(db, rental_id)
    payload = rental_service.serialize_rental(rental)
    payload["nextStatus"] = lifecycle_service.next_status(rental.Status)
    return payload


@app.patch("/api/rentals/{rental_id}")
def patch_rental(
    rental_id: int,
    payload: UpdateRentalRequest,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    rental_service.update_rental(db, rental, payload, x_user_role, payload.expectedVersion)
    return rental_service.serialize_rental(rental)


@app.delete("/api/rentals/{rental_id}")
def remove_rental(
    rental_id: int,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental_service.delete_rental(db, load_rental(db, rental_id), x_user_role)
    return {"message": "Deleted"}


@app.get("/api/rentals/{rental_id}/metrics")
def get_rental_metrics(
    rental_id: int,
    today: date | None = Query(None),
    db: Session = Depends(get_rental_db),
):
    return running_metrics(load_rental(db, rental_id), today)


def _transition_response(result) -> dict:
    return {
        "message": f"Status updated to {lifecycle_service.STATUS_LABELS.get(result.rental.Status, result.rental.Status)}",
        "previousStatus": result.previous_status,
        "requiresReconciliation": result.requires_reconciliation,
        "events": serialize_events(result.events),
        "rental": rental_service.serialize_rental(result.rental),
    }


def _finalization_response(result) -> dict:
    return {
        "message": "Rental finalized",
        "finalValues": result.final_values,
        "warnings": result.warnings,
        "events": serialize_events(result.events),
        "rental": rental_service.serialize_rental(result.rental),
    }


@app.post("/api/rentals/{rental_id}/status")
def change_rental_status(
    rental_id: int,
    payload: StatusChangeRequest,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    if payload.status == "finished":
        result = billing_service.finalize(db, rental, x_user_role, expected_version=payload.expectedVersion)
        return _finalization_response(result)
    result = lifecycle_service.apply_transition(db, rental, payload.status, x_user_role, payload.expectedVersion)
    return _transition_response(result)


@app.post("/api/rentals/{rental_id}/advance")
def advance_rental(
    rental_id: int,
    payload: VersionedRequest | None = None,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    expected_version = payload.expectedVersion if payload else None
    if lifecycle_service.next_status(rental.Status) == "finished":
        result = billing_service.finalize(db, rental, x_user_role, expected_version=expected_version)
        return _finalization_response(result)
    result = lifecycle_service.advance(db, rental, x_user_role, expected_version)
    return _transition_response(result)


@app.post("/api/rentals/{rental_id}/cancel")
def cancel_rental(
    rental_id: int,
    payload: VersionedRequest | None = None,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    expected_version = payload.expectedVersion if payload else None
    result = lifecycle_service.apply_transition(db, rental, "cancelled", x_user_role, expected_version)
    return _transition_response(result)


@app.post("/api/rentals/{rental_id}/installation")
def schedule_installation(
    rental_id: int,
    payload: InstallationRequest,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    rental_service.set_installation(db, rental, payload.installationDate, payload.installationTime, x_user_role)
    return rental_service.serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/product-items")
def add_rental_product_item(
    rental_id: int,
    payload: AddProductItemRequest,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    rental_service.add_product_item(db, rental, payload, x_user_role, payload.expectedVersion)
    return rental_service.serialize_rental(rental)


@app.delete("/api/rentals/{rental_id}/product-items/{item_id}")
def remove_rental_product_item(
    rental_id: int,
    item_id: int,
    expected_version: int | None = Query(None, alias="expectedVersion"),
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    rental_service.remove_product_item(db, rental, item_id, x_user_role, expected_version)
    return rental_service.serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/payment/confirm")
def confirm_rental_payment(
    rental_id: int,
    payload: ConfirmPaymentRequest,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    result = payment_service.confirm_payment(
        db,
        rental,
        x_user_role,
        method=payload.method,
        paid_date=payload.paidDate,
        notes=payload.notes,
        expected_version=payload.expectedVersion,
    )
    return _transition_response(result)


@app.post("/api/rentals/{rental_id}/payment/defer")
def defer_rental_payment(
    rental_id: int,
    payload: VersionedRequest | None = None,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    expected_version = payload.expectedVersion if payload else None
    result = payment_service.defer_payment(db, rental, x_user_role, expected_version)
    return _transition_response(result)


@app.post("/api/rentals/{rental_id}/payments")
def record_rental_payment(
    rental_id: int,
    payload: RecordPaymentRequest,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    rental = load_rental(db, rental_id)
    payment = payment_service.record_payment(db, rental, payload, x_user_role)
    return payment_service.serialize_payment(payment)


@app.get("/api/rentals/{rental_id}/checklist")
def get_rental_checklist(rental_id: int, db: Session = Depends(get_rental_db)):
    rental = load_rental(db, rental_id)
    items = checklist_service.generate(db, rental)
    return {
        "rentalID": rental.RentalID,
        "items": [checklist_service.serialize_checklist_item(item) for item in items],
        "summary": checklist_service.summarize(items),
        "readyToFinalize": checklist_service.collection_ready(rental),
    }


@app.post("/api/checklist/{item_id}/collect")
def collect_checklist_item(
    item_id: int,
    payload: MarkCollectedRequest,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    result = checklist_service.mark_collected(
        db,
        item_id,
        payload.collectedBy,
        payload.quantityCollected,
        x_user_role,
        expected_version=payload.expectedVersion,
        notes=payload.notes,
    )
    return {
        "item": checklist_service.serialize_checklist_item(result.item),
        "warnings": result.warnings,
        "events": serialize_events(result.events),
        "summary": checklist_service.summarize(result.item.Rental.ChecklistItems),
    }


@app.post("/api/checklist/{item_id}/unmark")
def unmark_checklist_item(
    item_id: int,
    payload: VersionedRequest | None = None,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    expected_version = payload.expectedVersion if payload else None
    result = checklist_service.unmark(db, item_id, x_user_role, expected_version)
    return {
        "item": checklist_service.serialize_checklist_item(result.item),
        "summary": checklist_service.summarize(result.item.Rental.ChecklistItems),
    }


@app.get("/api/rentals/{rental_id}/final-values")
def get_final_values(
    rental_id: int,
    return_date: date | None = Query(None, alias="returnDate"),
    db: Session = Depends(get_rental_db),
):
    rental = load_rental(db, rental_id)
    if return_date is None and rental.Status == "finished":
        return_date = rental.ActualReturnDate or rental.EndDate
    return billing_service.compute_final_values(rental, return_date)


@app.post("/api/rentals/{rental_id}/finalize")
def finalize_rental(
    rental_id: int,
    payload: FinalizeRequest | None = None,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    payload = payload or FinalizeRequest()
    rental = load_rental(db, rental_id)
    result = billing_service.finalize(
        db,
        rental,
        x_user_role,
        actual_return_date=payload.returnDate,
        expected_version=payload.expectedVersion,
        return_notes=payload.returnNotes,
    )
    return _finalization_response(result)


@app.get("/api/rentals/{rental_id}/contract-data")
def get_contract_data(
    rental_id: int,
    return_date: date | None = Query(None, alias="returnDate"),
    db: Session = Depends(get_rental_db),
):
    rental = load_rental(db, rental_id)
    final_values = None
    if rental.Status == "finished":
        final_values = billing_service.compute_final_values(rental, rental.ActualReturnDate or rental.EndDate)
    elif rental.Status == "collecting":
        final_values = billing_service.compute_final_values(rental, return_date)
    return billing_service.build_contract_payload(rental, final_values)


@app.post("/api/rentals/{rental_id}/contract")
def issue_rental_contract(
    rental_id: int,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    contract = contract_service.issue_contract(db, load_rental(db, rental_id), x_user_role)
    return contract_service.serialize_contract(contract)


@app.get("/api/rentals/{rental_id}/contract")
def get_rental_contract(rental_id: int, db: Session = Depends(get_rental_db)):
    return contract_service.serialize_contract(contract_service.require_contract_for_rental(db, rental_id))


@app.get("/api/contracts")
def get_contracts(db: Session = Depends(get_rental_db)):
    return [contract_service.serialize_contract(contract) for contract in contract_service.list_contracts(db)]


@app.delete("/api/contracts/{contract_id}")
def remove_contract(
    contract_id: int,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    contract_service.delete_contract(db, contract_id, x_user_role)
    return {"message": "Deleted"}


@app.get("/api/payments")
def get_payments(db: Session = Depends(get_rental_db)):
    return [payment_service.serialize_payment(payment) for payment in payment_service.list_payments(db)]


@app.patch("/api/payments/{payment_id}/status")
def patch_payment_status(
    payment_id: int,
    payload: PaymentStatusRequest,
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    payment = payment_service.update_payment_status(db, payment_id, payload.status, x_user_role, payload.paidDate)
    return payment_service.serialize_payment(payment)


@app.post("/api/payments/refresh-overdue")
def refresh_overdue_payments(
    today: date | None = Query(None),
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    return {"updated": payment_service.mark_overdue_payments(db, x_user_role, today)}


@app.get("/api/financial/summary")
def get_financial_summary(
    db: Session = Depends(get_rental_db),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
):
    return payment_service.financial_summary(db, x_user_role)
