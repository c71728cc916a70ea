"""Corpos de requisição da API (modelos sem tabela)."""
from datetime import date, datetime
from typing import List, Optional

from sqlmodel import Field, SQLModel

from garage.models import ItemType, PaymentMethod, RepairStatus, Role, StepStatus, TransactionStatus


class UserCreate(SQLModel):
    first_name: str
    last_name: str
    email: str
    role: Role = Role.CLIENT
    phone: Optional[str] = None
    hourly_rate: Optional[float] = None


class VehicleCreate(SQLModel):
    client_id: Optional[int] = None
    plate: str
    make: str
    model: str
    year: Optional[int] = None


class ServiceCreate(SQLModel):
    name: str
    type: str
    description: Optional[str] = None
    tax_rate: Optional[float] = None


class PackCreate(SQLModel):
    name: str
    service_ids: List[int]
    discount: float = 0.0
    tax_rate: Optional[float] = None


class QuoteCreate(SQLModel):
    client_id: Optional[int] = None
    vehicle_id: int
    problem: str


class ServiceLineIn(SQLModel):
    service_id: int
    price: float
    note: Optional[str] = None
    priority: int = 0


class PackLineIn(SQLModel):
    pack_id: int
    price: float
    note: Optional[str] = None
    priority: int = 0


class AdhocLineIn(SQLModel):
    name: str
    price: float
    quantity: float = 1
    category: Optional[str] = None
    note: Optional[str] = None
    priority: int = 0


class MechanicIn(SQLModel):
    mechanic_id: int
    hours: float = 0.0
    start_date: Optional[date] = None


class AssignMechanics(SQLModel):
    mechanic_ids: List[int]
    hours_per_mechanic: List[float]
    start_dates: Optional[List[Optional[date]]] = None


class FinalizeQuote(SQLModel):
    """Coleções omitidas ficam como estão; as informadas substituem as atuais."""
    services: Optional[List[ServiceLineIn]] = None
    packs: Optional[List[PackLineIn]] = None
    adhoc_lines: Optional[List[AdhocLineIn]] = None
    mechanics: Optional[List[MechanicIn]] = None
    intervention_date: Optional[date] = None


class TaskToggle(SQLModel):
    item_type: ItemType


class ChatMessageIn(SQLModel):
    message: str


class RepairStatusIn(SQLModel):
    status: RepairStatus


class StepIn(SQLModel):
    title: str
    description: Optional[str] = None


class StepStatusIn(SQLModel):
    status: StepStatus
    finished_at: Optional[datetime] = None


class CommentIn(SQLModel):
    message: str


class PhotoIn(SQLModel):
    url: str
    description: str
    step_id: Optional[int] = None


class DiscountIn(SQLModel):
    amount: Optional[float] = None
    percentage: Optional[float] = None
    description: Optional[str] = None


class InvoiceCreate(SQLModel):
    repair_id: int
    discount: Optional[DiscountIn] = None
    payment_terms_days: Optional[int] = Field(default=None, ge=0)
    comments: Optional[str] = None


class PaymentIn(SQLModel):
    amount: float
    method: PaymentMethod
    reference: Optional[str] = None
    status: TransactionStatus = TransactionStatus.VALIDATED
    paid_at: Optional[datetime] = None
