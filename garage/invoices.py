"""
Faturamento.

Uma fatura nasce de uma reparação concluída (no máximo uma por reparação).
As linhas são cópias imutáveis dos serviços e pacotes da reparação; o número
vem de um contador atômico, sem repetição nem buracos.
"""
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from garage import config
from garage.errors import Conflict, InvalidState, ValidationError
from garage.logger import logger
from garage.models import (
    Invoice, InvoiceLine, InvoiceStatus, ItemType, NotificationType, PaymentMethod,
    PaymentTransaction, RepairOrder, RepairStatus, TransactionStatus,
)
from garage.notifications import notify
from garage.permissions import Action, Actor, Resource, require
from garage.repairs import repair_lines
from garage.repository import atomic, get_or_404, paginate
from garage.sequences import next_value

INVOICE_SEQUENCE = "invoice_seq"
BILLABLE_KINDS = (ItemType.SERVICE, ItemType.PACK)
OPEN_STATUSES = (InvoiceStatus.ISSUED, InvoiceStatus.PARTIALLY_PAID, InvoiceStatus.OVERDUE)


def line_amounts(quantity: float, unit_price_ht: float, tax_rate: float):
    """Retorna (HT, TVA, TTC) de uma linha."""
    amount_ht = (quantity or 0) * (unit_price_ht or 0)
    amount_tva = amount_ht * (tax_rate or 0) / 100
    return amount_ht, amount_tva, amount_ht + amount_tva


def format_number(sequence: int) -> str:
    return f"{config.INVOICE_PREFIX}-{sequence:04d}"


def _discount_amount(discount: Optional[dict], gross: float) -> float:
    if not discount:
        return 0.0
    percentage = discount.get("percentage")
    amount = discount.get("amount")
    if percentage is not None:
        if percentage < 0 or percentage > 100:
            raise ValidationError("Percentual de desconto deve estar entre 0 e 100")
        amount = gross * percentage / 100
    amount = amount or 0.0
    if amount < 0:
        raise ValidationError("O desconto não pode ser negativo")
    if amount > gross:
        raise ValidationError("O desconto não pode ser maior que o total da fatura")
    return amount


def create_invoice_from_repair(
    session: Session,
    repair_id: int,
    actor: Actor,
    discount: Optional[dict] = None,
    payment_terms_days: Optional[int] = None,
    comments: Optional[str] = None,
    today: Optional[date] = None,
) -> Invoice:
    require(actor, Action.INVOICE_MANAGE, message="Somente um gerente pode faturar")
    repair = get_or_404(session, RepairOrder, repair_id, "Reparação")
    if repair.status != RepairStatus.COMPLETED:
        raise InvalidState("A reparação precisa estar concluída para ser faturada")
    existing = session.exec(select(Invoice).where(Invoice.repair_id == repair.id)).first()
    if existing:
        raise Conflict(f"Já existe a fatura {existing.number} para esta reparação")

    lines = []
    for item in repair_lines(session, repair.id):
        if item.kind not in BILLABLE_KINDS:
            continue
        tax_rate = item.tax_rate if item.tax_rate is not None else config.DEFAULT_TAX_RATE
        amount_ht, amount_tva, amount_ttc = line_amounts(1, item.price, tax_rate)
        lines.append(InvoiceLine(
            designation=item.designation, kind=item.kind,
            reference=str(item.ref_id) if item.ref_id is not None else None,
            quantity=1, unit_price_ht=item.price or 0.0, tax_rate=tax_rate,
            amount_ht=amount_ht, amount_tva=amount_tva, amount_ttc=amount_ttc,
        ))
    if not lines:
        raise ValidationError("Impossível gerar uma fatura sem linhas de serviço ou pacote")

    total_ht = sum(line.amount_ht for line in lines)
    total_tva = sum(line.amount_tva for line in lines)
    discount_amount = _discount_amount(discount, total_ht + total_tva)

    issued_on = today or date.today()
    terms = payment_terms_days if payment_terms_days is not None else config.PAYMENT_TERMS_DAYS

    try:
        with atomic(session):
            sequence = next_value(session, INVOICE_SEQUENCE)
            invoice = Invoice(
                number=format_number(sequence), sequence=sequence,
                repair_id=repair.id, quote_id=repair.quote_id,
                client_id=repair.client_id, vehicle_id=repair.vehicle_id,
                issued_on=issued_on, due_on=issued_on + timedelta(days=terms),
                total_ht=total_ht, total_tva=total_tva,
                total_ttc=total_ht + total_tva - discount_amount,
                discount_amount=discount_amount,
                discount_percentage=(discount or {}).get("percentage"),
                discount_description=(discount or {}).get("description"),
                status=InvoiceStatus.DRAFT, payment_terms_days=terms,
                comments=comments, created_by=actor.user_id,
            )
            session.add(invoice)
            session.flush()
            for line in lines:
                line.invoice_id = invoice.id
                session.add(line)
            repair.status = RepairStatus.INVOICED
            session.add(repair)
    except IntegrityError:
        raise Conflict("Já existe uma fatura para esta reparação")

    session.refresh(invoice)
    logger.info(f"Fatura {invoice.number} criada para a reparação {repair_id} (TTC={invoice.total_ttc})")

    notify(
        session, NotificationType.INVOICE_GENERATED,
        f"A fatura {invoice.number} da sua reparação foi gerada", f"/invoices/{invoice.id}",
        recipient_id=invoice.client_id, sender_id=actor.user_id, entity_id=invoice.id,
    )
    return invoice


def invoice_lines(session: Session, invoice_id: int) -> List[InvoiceLine]:
    return session.exec(
        select(InvoiceLine).where(InvoiceLine.invoice_id == invoice_id).order_by(InvoiceLine.id)
    ).all()


def invoice_transactions(session: Session, invoice_id: int) -> List[PaymentTransaction]:
    return session.exec(
        select(PaymentTransaction).where(PaymentTransaction.invoice_id == invoice_id)
        .order_by(PaymentTransaction.paid_at, PaymentTransaction.id)
    ).all()


def amount_paid(session: Session, invoice_id: int) -> float:
    return sum(
        t.amount for t in invoice_transactions(session, invoice_id)
        if t.status == TransactionStatus.VALIDATED
    )


def derive_status(invoice: Invoice, paid: float, today: date) -> InvoiceStatus:
    """Status de pagamento a partir do total pago e do vencimento."""
    if invoice.status == InvoiceStatus.CANCELLED:
        return invoice.status
    if paid > 0 and paid >= invoice.total_ttc - config.PAYMENT_TOLERANCE:
        return InvoiceStatus.PAID
    if invoice.status in OPEN_STATUSES and invoice.due_on < today:
        return InvoiceStatus.OVERDUE
    if paid > 0:
        return InvoiceStatus.PARTIALLY_PAID
    if invoice.status == InvoiceStatus.OVERDUE:
        return InvoiceStatus.ISSUED
    return invoice.status


def add_payment(
    session: Session,
    actor: Actor,
    invoice_id: int,
    amount: float,
    method,
    reference: Optional[str] = None,
    status=TransactionStatus.VALIDATED,
    paid_at: Optional[datetime] = None,
    today: Optional[date] = None,
) -> Invoice:
    require(actor, Action.INVOICE_MANAGE, message="Somente um gerente pode registrar pagamentos")
    invoice = get_or_404(session, Invoice, invoice_id, "Fatura")
    if invoice.status == InvoiceStatus.CANCELLED:
        raise InvalidState(f"A fatura {invoice.number} está cancelada")
    if invoice.status == InvoiceStatus.PAID:
        raise InvalidState(f"A fatura {invoice.number} já está paga")
    if amount is None or amount <= 0:
        raise ValidationError("O valor do pagamento deve ser positivo")
    try:
        method = PaymentMethod(method)
        status = TransactionStatus(status)
    except ValueError as e:
        raise ValidationError(f"Dados de pagamento inválidos: {e}")

    with atomic(session):
        session.add(PaymentTransaction(
            invoice_id=invoice.id, amount=amount, method=method, reference=reference,
            status=status, paid_at=paid_at or datetime.now(),
        ))
        session.flush()
        invoice.status = derive_status(invoice, amount_paid(session, invoice.id), today or date.today())
        session.add(invoice)
    session.refresh(invoice)
    logger.info(f"Pagamento de {amount} ({method.value}) na fatura {invoice.number}; status={invoice.status.value}")
    return invoice


def issue_invoice(session: Session, actor: Actor, invoice_id: int) -> Invoice:
    require(actor, Action.INVOICE_MANAGE, message="Somente um gerente pode emitir faturas")
    invoice = get_or_404(session, Invoice, invoice_id, "Fatura")
    if invoice.status != InvoiceStatus.DRAFT:
        raise InvalidState(f"Somente faturas em rascunho podem ser emitidas (status atual: {invoice.status.value})")
    with atomic(session):
        invoice.status = InvoiceStatus.ISSUED
        invoice.validated_by = actor.user_id
        session.add(invoice)
    session.refresh(invoice)
    logger.info(f"Fatura {invoice.number} emitida por {actor.user_id}")
    return invoice


def cancel_invoice(session: Session, actor: Actor, invoice_id: int) -> Invoice:
    require(actor, Action.INVOICE_MANAGE, message="Somente um gerente pode cancelar faturas")
    invoice = get_or_404(session, Invoice, invoice_id, "Fatura")
    if invoice.status in (InvoiceStatus.CANCELLED, InvoiceStatus.PAID):
        raise InvalidState(f"A fatura {invoice.number} não pode ser cancelada (status: {invoice.status.value})")
    if amount_paid(session, invoice.id) > 0:
        raise InvalidState(f"A fatura {invoice.number} já recebeu pagamentos")
    with atomic(session):
        invoice.status = InvoiceStatus.CANCELLED
        session.add(invoice)
    session.refresh(invoice)
    logger.info(f"Fatura {invoice.number} cancelada por {actor.user_id}")
    return invoice


def refresh_overdue(session: Session, today: Optional[date] = None) -> int:
    """Marca como vencidas as faturas em aberto com vencimento passado."""
    today = today or date.today()
    candidates = session.exec(
        select(Invoice).where(
            Invoice.status.in_((InvoiceStatus.ISSUED, InvoiceStatus.PARTIALLY_PAID)),
            Invoice.due_on < today,
        )
    ).all()
    with atomic(session):
        for invoice in candidates:
            invoice.status = InvoiceStatus.OVERDUE
            session.add(invoice)
    if candidates:
        logger.info(f"{len(candidates)} fatura(s) marcadas como vencidas")
    return len(candidates)


def get_invoice(session: Session, actor: Actor, invoice_id: int) -> Invoice:
    invoice = get_or_404(session, Invoice, invoice_id, "Fatura")
    require(actor, Action.INVOICE_VIEW, Resource(owner_id=invoice.client_id), "Acesso não autorizado a esta fatura")
    return invoice


def invoice_detail(session: Session, invoice: Invoice) -> dict:
    session.refresh(invoice)
    paid = amount_paid(session, invoice.id)
    return {
        **invoice.model_dump(),
        "lines": [line.model_dump() for line in invoice_lines(session, invoice.id)],
        "transactions": [t.model_dump() for t in invoice_transactions(session, invoice.id)],
        "amount_paid": paid,
        "balance": invoice.total_ttc - paid,
    }


def list_invoices(session: Session, status: Optional[InvoiceStatus] = None, client_id: Optional[int] = None,
                  page: int = 1, limit: int = 10) -> dict:
    query = select(Invoice)
    if status:
        query = query.where(Invoice.status == status)
    if client_id:
        query = query.where(Invoice.client_id == client_id)
    return paginate(session, query.order_by(Invoice.sequence.desc()), page, limit)
