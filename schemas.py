"""
TidyHome Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class Order -> collection "order".

Embedded types (Address, TimeSlot, ServiceOption, ...) are stored inside their parent document.
Field names follow the JSON the web client sends, so documents can be returned as-is.
"""
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, EmailStr

ORDER_STATUSES = ("pending", "confirmed", "in-progress", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "refunded")
PAYMENT_METHODS = ("card", "paypal")


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    zipCode: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    instructions: Optional[str] = None


class TimeSlot(BaseModel):
    start: str = Field("09:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    end: str = Field("12:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: str = Field("customer", description="customer | admin")
    is_active: bool = True


class ServiceOption(BaseModel):
    id: str
    name: str
    icon: str
    price: str = Field(..., description="Display price, e.g. '€10'")
    description: Optional[str] = None


class Service(BaseModel):
    name: str
    description: str
    type: str
    price: str = "FREE"
    options: List[ServiceOption] = []
    isActive: bool = True


class Provider(BaseModel):
    name: str
    title: str
    description: str
    email: EmailStr
    phone: Optional[str] = None
    type: str = Field(..., pattern="^(person|company)$")
    services: List[str] = []
    optionPrices: Dict[str, Dict[str, float]] = Field(
        default_factory=dict, description="serviceId -> {optionId -> price}"
    )
    rating: float = 0
    isPopular: bool = False
    isVerified: bool = False
    isActive: bool = True


class SelectedOption(BaseModel):
    """Snapshot of a service option at order time."""
    optionId: str
    name: str
    price: str
    quantity: int = Field(..., ge=1)


class PaymentHistoryEntry(BaseModel):
    paymentStatus: str
    transactionId: Optional[str] = None
    timestamp: str
    metadata: Dict[str, Any] = {}


class PaymentDetails(BaseModel):
    transactionId: Optional[str] = None
    timestamp: Optional[str] = None
    paypalOrderId: Optional[str] = None
    paypalPayerId: Optional[str] = None
    paypalCapture: Optional[Dict[str, Any]] = None
    cardLast4: Optional[str] = None
    cardBrand: Optional[str] = None
    history: List[PaymentHistoryEntry] = []


class Order(BaseModel):
    user: str
    service: str
    provider: Optional[str] = None
    selectedOptions: List[SelectedOption]
    totalAmount: float
    tax: float
    grandTotal: float
    currency: str = "EUR"
    address: Address
    scheduledDate: str = Field(..., description="ISO date")
    timeSlot: TimeSlot
    status: str = Field("pending", description="pending|confirmed|in-progress|completed|cancelled")
    paymentStatus: str = Field("pending", description="pending|processing|completed|failed|refunded")
    paymentMethod: str = Field("card", description="card|paypal")
    paymentDetails: PaymentDetails = Field(default_factory=PaymentDetails)
