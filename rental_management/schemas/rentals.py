from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateRentalProductItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    productID: int
    quantity: int = 1
    unitPrice: Optional[float] = None


class CreateRentalTentItemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tentID: int
    quantity: int = 1
    unitPrice: Optional[float] = None


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customerID: int
    startDate: date
    endDate: date
    installationDate: Optional[date] = None
    installationTime: Optional[str] = None
    pricingPolicy: Literal["calendar", "business_days"] = "business_days"
    discount: float = 0
    deliveryFee: float = 0
    notes: Optional[str] = None
    productItems: List[CreateRentalProductItemDto] = []
    tentItems: List[CreateRentalTentItemDto] = []


class StatusChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    expectedVersion: Optional[int] = None


class VersionedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    expectedVersion: Optional[int] = None


class InstallationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    installationDate: date
    installationTime: Optional[str] = None


class AddProductItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    productID: int
    quantity: int = 1
    unitPrice: Optional[float] = None
    expectedVersion: Optional[int] = None


class ConfirmPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    method: Literal["PIX", "DINHEIRO", "CARTAO", "BOLETO", "TRANSFERENCIA"] = "PIX"
    paidDate: Optional[date] = None
    notes: Optional[str] = None
    expectedVersion: Optional[int] = None


class RecordPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: float
    dueDate: date
    paidDate: Optional[date] = None
    method: str = "PIX"
    notes: Optional[str] = None


class MarkCollectedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    collectedBy: Optional[str] = None
    quantityCollected: int
    notes: Optional[str] = None
    expectedVersion: Optional[int] = None


class FinalizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnDate: Optional[date] = None
    returnNotes: Optional[str] = None
    expectedVersion: Optional[int] = None


class UpdateRentalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: Optional[date] = None
    endDate: Optional[date] = None
    installationDate: Optional[date] = None
    installationTime: Optional[str] = None
    pricingPolicy: Optional[Literal["calendar", "business_days"]] = None
    discount: Optional[float] = None
    deliveryFee: Optional[float] = None
    notes: Optional[str] = None
    expectedVersion: Optional[int] = None


class PaymentStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    paidDate: Optional[date] = None
