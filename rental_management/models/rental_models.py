from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


def _money():
    return Numeric(10, 2, asdecimal=False)


class Customer(Base):
    __tablename__ = "Customers"

    CustomerID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Document = Column(String(50))
    Phone = Column(String(50))
    Email = Column(String(255))
    Address = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("Rental", back_populates="Customer")


class Product(Base):
    __tablename__ = "Products"

    ProductID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Description = Column(String(1000))
    DailyRentalPrice = Column(_money(), nullable=False, default=0)
    TotalStock = Column(Integer, nullable=False, default=0)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    RentalItems = relationship("RentalProductItem", back_populates="Product")


class Tent(Base):
    __tablename__ = "Tents"

    TentID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Size = Column(String(50))
    DailyPrice = Column(_money(), nullable=False, default=0)
    TotalStock = Column(Integer, nullable=False, default=0)
    CreatedDate = Column(DateTime, server_default=func.now())

    RentalItems = relationship("RentalTentItem", back_populates="Tent")


class Rental(Base):
    __tablename__ = "Rentals"
    __table_args__ = (UniqueConstraint("RentalNumber", name="UQ_Rentals_RentalNumber"),)

    RentalID = Column(Integer, primary_key=True)
    RentalNumber = Column(String(50), nullable=False)
    CustomerID = Column(Integer, ForeignKey("Customers.CustomerID"), nullable=False)
    Status = Column(String(20), nullable=False, default="pending")
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    InstallationDate = Column(Date)
    InstallationTime = Column(String(10))
    ActualReturnDate = Column(Date)
    PricingPolicy = Column(String(20), nullable=False, default="business_days")
    DailyRate = Column(_money(), nullable=False, default=0)
    Discount = Column(_money(), nullable=False, default=0)
    DeliveryFee = Column(_money(), nullable=False, default=0)
    TotalValue = Column(_money(), nullable=False, default=0)
    Notes = Column(String(1000))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    __mapper_args__ = {"version_id_col": Version}

    Customer = relationship("Customer", back_populates="Rentals")
    ProductItems = relationship("RentalProductItem", back_populates="Rental", cascade="all, delete-orphan")
    TentItems = relationship("RentalTentItem", back_populates="Rental", cascade="all, delete-orphan")
    ChecklistItems = relationship(
        "ChecklistItem",
        back_populates="Rental",
        cascade="all, delete-orphan",
        order_by="ChecklistItem.ChecklistItemID",
    )
    Payments = relationship("Payment", back_populates="Rental", cascade="all, delete-orphan")
    Contract = relationship("Contract", back_populates="Rental", uselist=False, cascade="all, delete-orphan")


class RentalProductItem(Base):
    __tablename__ = "RentalProductItems"

    RentalProductItemID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    UnitPrice = Column(_money(), nullable=False, default=0)

    Rental = relationship("Rental", back_populates="ProductItems")
    Product = relationship("Product", back_populates="RentalItems")


class RentalTentItem(Base):
    __tablename__ = "RentalTentItems"

    RentalTentItemID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    TentID = Column(Integer, ForeignKey("Tents.TentID"), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    UnitPrice = Column(_money(), nullable=False, default=0)

    Rental = relationship("Rental", back_populates="TentItems")
    Tent = relationship("Tent", back_populates="RentalItems")


class ChecklistItem(Base):
    __tablename__ = "RentalChecklist"
    __table_args__ = (UniqueConstraint("RentalID", "ProductID", name="UQ_RentalChecklist_RentalProduct"),)

    ChecklistItemID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False)
    QuantityExpected = Column(Integer, nullable=False)
    QuantityCollected = Column(Integer, nullable=False, default=0)
    Collected = Column(Boolean, nullable=False, default=False)
    CollectedAt = Column(DateTime)
    CollectedBy = Column(String(255))
    Notes = Column(String(1000))
    Version = Column(Integer, nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    __mapper_args__ = {"version_id_col": Version}

    Rental = relationship("Rental", back_populates="ChecklistItems")
    Product = relationship("Product")


class Payment(Base):
    __tablename__ = "Payments"

    PaymentID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    DueDate = Column(Date, nullable=False)
    PaidDate = Column(Date)
    Amount = Column(_money(), nullable=False)
    Method = Column(String(20), nullable=False, default="PIX")
    Status = Column(String(20), nullable=False, default="PENDENTE")
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())

    Rental = relationship("Rental", back_populates="Payments")


class Contract(Base):
    __tablename__ = "Contracts"

    ContractID = Column(Integer, primary_key=True)
    ContractNumber = Column(Integer, nullable=False, unique=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False, unique=True)
    CustomerID = Column(Integer, ForeignKey("Customers.CustomerID"), nullable=False)
    GeneratedAt = Column(DateTime, nullable=False)
    CustomerName = Column(String(255), nullable=False)
    CustomerDocument = Column(String(50))
    CustomerPhone = Column(String(50))
    CustomerAddress = Column(String(500))
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    TotalValue = Column(_money(), nullable=False, default=0)
    EquipmentValue = Column(_money(), nullable=False, default=0)
    ItemsJson = Column(String(4000))
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())

    Rental = relationship("Rental", back_populates="Contract")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    Actor = Column(String(50))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    RentalID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
