from typing import Optional
from sqlmodel import Field, SQLModel
from sqlalchemy import UniqueConstraint
from datetime import date, datetime
from enum import Enum

# --- Enums ---
class Role(str, Enum):
    CLIENT = "client"
    MANAGER = "manager"
    MECHANIC = "mechanic"

class QuoteStatus(str, Enum):
    """Ciclo de vida de um orçamento: pending -> finalized -> accepted | refused."""
    PENDING = "pending"       # Aguardando precificação do gerente
    FINALIZED = "finalized"   # Enviado ao cliente
    ACCEPTED = "accepted"
    REFUSED = "refused"

class ItemType(str, Enum):
    """Coleções de itens de um orçamento."""
    SERVICE = "service"
    PACK = "pack"
    ADHOC = "adhoc"

class RepairStatus(str, Enum):
    PLANNED = "Planned"
    IN_PROGRESS = "InProgress"
    AWAITING_PARTS = "AwaitingParts"
    COMPLETED = "Completed"
    INVOICED = "Invoiced"
    CANCELLED = "Cancelled"

class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"

class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"

class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CHEQUE = "cheque"
    ONLINE = "online"

class TransactionStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"
    REFUNDED = "refunded"

class NotificationType(str, Enum):
    QUOTE_REQUESTED = "QUOTE_REQUESTED"
    QUOTE_FINALIZED = "QUOTE_FINALIZED"
    QUOTE_ACCEPTED = "QUOTE_ACCEPTED"
    QUOTE_REFUSED = "QUOTE_REFUSED"
    NEW_CHAT_MESSAGE = "NEW_CHAT_MESSAGE"
    REPAIR_ASSIGNED = "REPAIR_ASSIGNED"
    REPAIR_STATUS_UPDATE = "REPAIR_STATUS_UPDATE"
    INVOICE_GENERATED = "INVOICE_GENERATED"

# --- Usuários, veículos e catálogo ---

class User(SQLModel, table=True):
    """
    Cliente, gerente ou mecânico da oficina.
    Mecânicos carregam o valor da hora usado na precificação.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    first_name: str
    last_name: str
    email: str = Field(index=True, unique=True)
    role: Role = Field(default=Role.CLIENT, index=True)
    phone: Optional[str] = None
    is_active: bool = Field(default=True)
    hourly_rate: Optional[float] = Field(default=None, ge=0, description="Valor da hora (mecânicos)")
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

class Vehicle(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="user.id", index=True)
    plate: str = Field(description="Placa do veículo")
    make: str
    model: str
    year: Optional[int] = None

class Service(SQLModel, table=True):
    """Serviço do catálogo (ex: troca de óleo)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)
    type: str
    description: Optional[str] = None
    tax_rate: Optional[float] = Field(default=None, description="Alíquota de imposto (%)")

class ServicePack(SQLModel, table=True):
    """Pacote de serviços vendido em conjunto."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)
    discount: float = Field(default=0.0)
    tax_rate: Optional[float] = None

class ServicePackItem(SQLModel, table=True):
    pack_id: int = Field(foreign_key="servicepack.id", primary_key=True)
    service_id: int = Field(foreign_key="service.id", primary_key=True)

# --- Orçamento ---

class Quote(SQLModel, table=True):
    """
    Orçamento (agregado central).
    O total nunca é editado à mão: é recalculado a cada mutação dos itens
    ou das horas dos mecânicos.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="user.id", index=True)
    vehicle_id: int = Field(foreign_key="vehicle.id")
    problem: str = Field(description="Problema relatado pelo cliente")
    status: QuoteStatus = Field(default=QuoteStatus.PENDING, index=True)
    total: float = Field(default=0.0)
    intervention_date: Optional[date] = None
    responded_by: Optional[int] = Field(default=None, foreign_key="user.id")
    responded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)
    version: int = Field(default=1, description="Versão para controle otimista")

class QuoteServiceLine(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    quote_id: int = Field(foreign_key="quote.id", index=True)
    service_id: int = Field(foreign_key="service.id")
    price: float = 0.0
    note: Optional[str] = None
    priority: int = 0
    completed: bool = False
    completed_by: Optional[int] = Field(default=None, foreign_key="user.id")

class QuotePackLine(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    quote_id: int = Field(foreign_key="quote.id", index=True)
    pack_id: int = Field(foreign_key="servicepack.id")
    price: float = 0.0
    note: Optional[str] = None
    priority: int = 0
    completed: bool = False
    completed_by: Optional[int] = Field(default=None, foreign_key="user.id")

class QuoteAdhocLine(SQLModel, table=True):
    """Linha avulsa (peça ou serviço fora do catálogo)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    quote_id: int = Field(foreign_key="quote.id", index=True)
    name: str
    price: float = 0.0
    quantity: float = 1
    category: Optional[str] = None
    note: Optional[str] = None
    priority: int = 0
    completed: bool = False
    completed_by: Optional[int] = Field(default=None, foreign_key="user.id")

class QuoteMechanic(SQLModel, table=True):
    """Mecânico alocado em um orçamento (valor da hora congelado na alocação)."""
    __table_args__ = (UniqueConstraint("quote_id", "mechanic_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    quote_id: int = Field(foreign_key="quote.id", index=True)
    mechanic_id: int = Field(foreign_key="user.id", index=True)
    hourly_rate: float = 0.0
    hours_allocated: float = 0.0
    start_date: Optional[date] = None

class QuoteMessage(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    quote_id: int = Field(foreign_key="quote.id", index=True)
    sender_id: int = Field(foreign_key="user.id")
    sender_name: str
    sender_role: Role
    message: str
    sent_at: datetime = Field(default_factory=datetime.now)

# --- Reparação ---

class RepairOrder(SQLModel, table=True):
    """
    Ordem de reparação criada a partir de um orçamento aceito.
    As linhas são copiadas do orçamento no momento da aceitação.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    quote_id: int = Field(foreign_key="quote.id", unique=True)
    client_id: int = Field(foreign_key="user.id", index=True)
    vehicle_id: int = Field(foreign_key="vehicle.id")
    status: RepairStatus = Field(default=RepairStatus.PLANNED, index=True)
    problem: Optional[str] = None
    estimated_cost: float = 0.0
    final_cost: Optional[float] = None
    planned_start: Optional[date] = None
    planned_end: Optional[date] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)

class RepairLine(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    repair_id: int = Field(foreign_key="repairorder.id", index=True)
    kind: ItemType
    ref_id: Optional[int] = Field(default=None, description="ID do serviço ou pacote de origem")
    designation: str
    price: float = 0.0
    quantity: float = 1
    note: Optional[str] = None
    tax_rate: Optional[float] = None

class RepairMechanic(SQLModel, table=True):
    repair_id: int = Field(foreign_key="repairorder.id", primary_key=True)
    mechanic_id: int = Field(foreign_key="user.id", primary_key=True)

class RepairStep(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    repair_id: int = Field(foreign_key="repairorder.id", index=True)
    title: str
    description: Optional[str] = None
    status: StepStatus = Field(default=StepStatus.PENDING)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)

class StepComment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    step_id: int = Field(foreign_key="repairstep.id", index=True)
    author_id: int = Field(foreign_key="user.id")
    message: str
    created_at: datetime = Field(default_factory=datetime.now)

class RepairPhoto(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    repair_id: int = Field(foreign_key="repairorder.id", index=True)
    url: str
    description: str
    added_by: int = Field(foreign_key="user.id")
    step_id: Optional[int] = Field(default=None, foreign_key="repairstep.id")
    added_at: datetime = Field(default_factory=datetime.now)

class RepairNote(SQLModel, table=True):
    """Nota interna da equipe sobre a reparação."""
    id: Optional[int] = Field(default=None, primary_key=True)
    repair_id: int = Field(foreign_key="repairorder.id", index=True)
    author_id: int = Field(foreign_key="user.id")
    message: str
    created_at: datetime = Field(default_factory=datetime.now)

# --- Faturamento ---

class Invoice(SQLModel, table=True):
    """
    Fatura emitida a partir de uma reparação concluída.
    As linhas são imutáveis depois da criação.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    number: str = Field(unique=True)
    sequence: int = Field(unique=True, description="Valor do contador atômico")
    repair_id: int = Field(foreign_key="repairorder.id", unique=True)
    quote_id: Optional[int] = Field(default=None, foreign_key="quote.id")
    client_id: int = Field(foreign_key="user.id", index=True)
    vehicle_id: int = Field(foreign_key="vehicle.id")
    issued_on: date
    due_on: date
    total_ht: float = 0.0
    total_tva: float = 0.0
    total_ttc: float = 0.0
    discount_amount: float = 0.0
    discount_percentage: Optional[float] = None
    discount_description: Optional[str] = None
    status: InvoiceStatus = Field(default=InvoiceStatus.DRAFT, index=True)
    payment_terms_days: int = 30
    comments: Optional[str] = None
    created_by: int = Field(foreign_key="user.id")
    validated_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=datetime.now)

class InvoiceLine(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoice.id", index=True)
    designation: str
    kind: ItemType
    reference: Optional[str] = None
    quantity: float
    unit_price_ht: float
    tax_rate: float
    amount_ht: float
    amount_tva: float
    amount_ttc: float

class PaymentTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="invoice.id", index=True)
    amount: float
    method: PaymentMethod
    reference: Optional[str] = None
    status: TransactionStatus = Field(default=TransactionStatus.VALIDATED)
    paid_at: datetime = Field(default_factory=datetime.now)

class Counter(SQLModel, table=True):
    """Sequências nomeadas (ex: numeração de faturas)."""
    name: str = Field(primary_key=True)
    value: int = 0

# --- Notificações ---

class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    recipient_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    recipient_role: Optional[Role] = Field(default=None, index=True)
    sender_id: Optional[int] = Field(default=None, foreign_key="user.id")
    type: NotificationType
    message: str
    link: str
    entity_id: Optional[int] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=datetime.now)
