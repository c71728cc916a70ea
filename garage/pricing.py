"""Cálculo do total de um orçamento."""
from sqlmodel import Session, select

from garage.models import (
    Quote, QuoteAdhocLine, QuoteMechanic, QuotePackLine, QuoteServiceLine,
)


def _num(value) -> float:
    # Campos ausentes contam como zero
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def _get(item, name):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def compute_total(services=(), packs=(), adhoc_lines=(), mechanics=()) -> float:
    """
    total = Σ serviços + Σ pacotes + Σ (avulsos × quantidade) + Σ (horas × valor da hora).
    Aceita objetos ou dicts; nenhum arredondamento é aplicado.
    """
    total = 0.0
    total += sum(_num(_get(s, "price")) for s in services or ())
    total += sum(_num(_get(p, "price")) for p in packs or ())
    total += sum(_num(_get(a, "price")) * _num(_get(a, "quantity")) for a in adhoc_lines or ())
    total += sum(
        _num(_get(m, "hours_allocated")) * _num(_get(m, "hourly_rate"))
        for m in mechanics or ()
    )
    return total


def load_quote_items(session: Session, quote_id: int) -> dict:
    """Carrega as quatro coleções de um orçamento."""
    return {
        "services": session.exec(
            select(QuoteServiceLine).where(QuoteServiceLine.quote_id == quote_id)
            .order_by(QuoteServiceLine.priority, QuoteServiceLine.id)
        ).all(),
        "packs": session.exec(
            select(QuotePackLine).where(QuotePackLine.quote_id == quote_id)
            .order_by(QuotePackLine.priority, QuotePackLine.id)
        ).all(),
        "adhoc_lines": session.exec(
            select(QuoteAdhocLine).where(QuoteAdhocLine.quote_id == quote_id)
            .order_by(QuoteAdhocLine.priority, QuoteAdhocLine.id)
        ).all(),
        "mechanics": session.exec(
            select(QuoteMechanic).where(QuoteMechanic.quote_id == quote_id)
            .order_by(QuoteMechanic.id)
        ).all(),
    }


def recompute_total(session: Session, quote: Quote) -> float:
    """Recalcula e grava quote.total a partir do estado atual (inclusive pendente na sessão)."""
    session.flush()
    items = load_quote_items(session, quote.id)
    quote.total = compute_total(**items)
    session.add(quote)
    return quote.total
