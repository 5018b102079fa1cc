import os
import sys
from datetime import date
from pathlib import Path

os.environ.setdefault("RENTAL_MANAGEMENT_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base
from models.rental_models import Customer, Product, Tent
from schemas.rentals import CreateRentalDto
from services import checklist_service, lifecycle_service, payment_service, rental_service
from services.store_service import load_rental


def make_session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    return engine, factory


def add_customer(db, name="Festa & Cia"):
    customer = Customer(Name=name, Document="12.345.678/0001-90", Phone="11 99999-0000")
    db.add(customer)
    db.commit()
    return customer


def add_product(db, name="Mesa plastica", price=100.0, stock=10):
    product = Product(Name=name, DailyRentalPrice=price, TotalStock=stock)
    db.add(product)
    db.commit()
    return product


def add_tent(db, name="Tenda 5x5", price=250.0, stock=2):
    tent = Tent(Name=name, Size="5x5", DailyPrice=price, TotalStock=stock)
    db.add(tent)
    db.commit()
    return tent


def stock_of(db, product_id):
    return db.execute(select(Product.TotalStock).where(Product.ProductID == product_id)).scalar_one()


def create_rental(
    db,
    customer,
    products,
    start=date(2024, 3, 1),
    end=date(2024, 3, 3),
    pricing_policy="calendar",
    discount=0,
    delivery_fee=0,
    role="admin",
):
    """``products`` is a list of ``(product, quantity)`` pairs."""
    payload = CreateRentalDto(
        customerID=customer.CustomerID,
        startDate=start,
        endDate=end,
        pricingPolicy=pricing_policy,
        discount=discount,
        deliveryFee=delivery_fee,
        productItems=[{"productID": product.ProductID, "quantity": quantity} for product, quantity in products],
    )
    rental = rental_service.create_rental(db, payload, role)
    return load_rental(db, rental.RentalID)


def move_to_collecting(db, rental):
    payment_service.confirm_payment(db, rental, "comercial", method="PIX", paid_date=rental.StartDate)
    lifecycle_service.advance(db, rental, "operacional")
    lifecycle_service.advance(db, rental, "operacional")
    checklist_service.generate(db, rental)
    return rental
