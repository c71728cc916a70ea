"""Indicadores do painel do gerente."""
from datetime import date, datetime, time
from typing import Optional

from sqlmodel import Session, func, select

from garage.models import (
    Invoice, InvoiceLine, InvoiceStatus, PaymentTransaction, Quote, QuoteStatus,
    RepairOrder, RepairStatus, TransactionStatus,
)

OPEN_REPAIR_STATUSES = (RepairStatus.PLANNED, RepairStatus.IN_PROGRESS, RepairStatus.AWAITING_PARTS)


def revenue_total(session: Session, date_from: Optional[date] = None, date_to: Optional[date] = None) -> float:
    """Soma dos pagamentos validados no período (datas inclusivas)."""
    query = select(func.coalesce(func.sum(PaymentTransaction.amount), 0.0)).where(
        PaymentTransaction.status == TransactionStatus.VALIDATED
    )
    if date_from:
        query = query.where(PaymentTransaction.paid_at >= datetime.combine(date_from, time.min))
    if date_to:
        query = query.where(PaymentTransaction.paid_at <= datetime.combine(date_to, time.max))
    return float(session.exec(query).one())


def revenue_by_kind(session: Session, date_from: Optional[date] = None, date_to: Optional[date] = None) -> dict:
    """Valor faturado (TTC das linhas) por tipo de linha, sem faturas canceladas."""
    query = (
        select(InvoiceLine.kind, func.sum(InvoiceLine.amount_ttc))
        .join(Invoice, Invoice.id == InvoiceLine.invoice_id)
        .where(Invoice.status != InvoiceStatus.CANCELLED)
        .group_by(InvoiceLine.kind)
    )
    if date_from:
        query = query.where(Invoice.issued_on >= date_from)
    if date_to:
        query = query.where(Invoice.issued_on <= date_to)
    return {kind.value: float(total or 0) for kind, total in session.exec(query).all()}


def quote_status_counts(session: Session) -> dict:
    counts = {status.value: 0 for status in QuoteStatus}
    rows = session.exec(select(Quote.status, func.count(Quote.id)).group_by(Quote.status)).all()
    for status, count in rows:
        counts[status.value] = count
    return counts


def open_repairs_count(session: Session) -> int:
    return session.exec(
        select(func.count(RepairOrder.id)).where(RepairOrder.status.in_(OPEN_REPAIR_STATUSES))
    ).one()


def dashboard(session: Session, date_from: Optional[date] = None, date_to: Optional[date] = None) -> dict:
    return {
        "revenue_total": revenue_total(session, date_from, date_to),
        "revenue_by_kind": revenue_by_kind(session, date_from, date_to),
        "quotes_by_status": quote_status_counts(session),
        "open_repairs": open_repairs_count(session),
    }
