"""
Database Schemas for the order desk

Each Pydantic model represents a collection in MongoDB. Collection name is the lowercase of the class name.
OrderItem is embedded in Order and has no collection of its own.
"""

from datetime import datetime
from typing import List, Literal

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from config import BITS

PHONE_PATTERN = r"^[\+]?[0-9\s\-\(\)]{10,}$"
DATE_FORMAT = "%d/%m/%Y"
TIME_FORMAT = "%H:%M"

Unit = Literal["Pc", "Outer", "Case"]
OrderStatus = Literal["Pending", "Completed"]


def _check_bit(value: str) -> str:
    value = value.strip()
    if value not in BITS:
        raise ValueError(f"bit must be one of: {', '.join(BITS)}")
    return value


def _check_format(value: str, fmt: str, message: str) -> str:
    try:
        datetime.strptime(value, fmt)
    except ValueError:
        raise ValueError(message)
    return value


class User(BaseModel):
    email: EmailStr
    name: str
    password_hash: str
    role: str = Field("staff", description="user role: admin, staff")
    is_active: bool = True


class Brand(BaseModel):
    name: str = Field(..., min_length=1)
    productCount: int = 0
    image: str = ""
    order: int = 0


class Product(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    brandId: ObjectId
    brandName: str = Field(..., description="snapshot of the owning brand's name")
    order: int = 0


class OrderItem(BaseModel):
    """A line as placed. Name, brand and unit are copied, never refreshed from Product."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    productId: ObjectId
    productName: str = Field(..., min_length=1)
    brandName: str = Field(..., min_length=1)
    unit: Unit
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    counterName: str = Field(..., min_length=1)
    bit: str
    status: OrderStatus = "Pending"
    orderNumber: str
    date: str = Field(..., description="DD/MM/YYYY")
    time: str = Field(..., description="HH:MM")
    totalItems: int = Field(..., ge=0)
    totalAmount: float = Field(..., ge=0)
    items: List[OrderItem] = []

    @field_validator("bit")
    @classmethod
    def check_bit(cls, value: str) -> str:
        return _check_bit(value)

    @field_validator("date")
    @classmethod
    def check_date(cls, value: str) -> str:
        return _check_format(value, DATE_FORMAT, "date must be DD/MM/YYYY")

    @field_validator("time")
    @classmethod
    def check_time(cls, value: str) -> str:
        return _check_format(value, TIME_FORMAT, "time must be HH:MM")


class Retailer(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    bit: str

    @field_validator("bit")
    @classmethod
    def check_bit(cls, value: str) -> str:
        return _check_bit(value)
