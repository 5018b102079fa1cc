from typing import Optional

from pydantic import BaseModel, ConfigDict


class CustomerCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    document: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None


class ProductCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: Optional[str] = None
    dailyRentalPrice: float = 0
    totalStock: int = 0


class TentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    size: Optional[str] = None
    dailyPrice: float = 0
    totalStock: int = 0


class CustomerUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    document: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None


class ProductUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    description: Optional[str] = None
    dailyRentalPrice: Optional[float] = None
    totalStock: Optional[int] = None


class TentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    size: Optional[str] = None
    dailyPrice: Optional[float] = None
    totalStock: Optional[int] = None
