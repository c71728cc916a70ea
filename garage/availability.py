"""
Disponibilidade dos mecânicos.

Cada alocação com data de início ocupa o mecânico por ceil(horas / jornada)
dias corridos a partir dessa data. Só contam os orçamentos ativos
(pending e accepted). Granularidade de dia: horários são ignorados.
"""
import math
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

from sqlmodel import Session, select

from garage import config
from garage.models import Quote, QuoteMechanic, QuoteStatus, Role, User

ACTIVE_QUOTE_STATUSES = (QuoteStatus.PENDING, QuoteStatus.ACCEPTED)


def as_day(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


def work_days(hours, workday_hours: float = None) -> int:
    workday_hours = workday_hours or config.WORKDAY_HOURS
    if not hours or hours <= 0:
        return 0
    return math.ceil(hours / workday_hours)


def occupied_days(start_date, hours, workday_hours: float = None) -> List[date]:
    """Dias ocupados por uma alocação; vazio se não houver data de início."""
    if start_date is None:
        return []
    first = as_day(start_date)
    return [first + timedelta(days=i) for i in range(work_days(hours, workday_hours))]


def active_mechanics(session: Session) -> List[User]:
    return session.exec(
        select(User).where(User.role == Role.MECHANIC, User.is_active == True)  # noqa: E712
        .order_by(User.id)
    ).all()


def build_occupancy(session: Session, exclude_quote_id: Optional[int] = None) -> Dict[date, Set[int]]:
    """Mapa dia -> conjunto de mecânicos ocupados."""
    query = (
        select(QuoteMechanic)
        .join(Quote, Quote.id == QuoteMechanic.quote_id)
        .where(Quote.status.in_(ACTIVE_QUOTE_STATUSES))
        .where(QuoteMechanic.start_date != None)  # noqa: E711
    )
    if exclude_quote_id is not None:
        query = query.where(QuoteMechanic.quote_id != exclude_quote_id)

    occupation = defaultdict(set)
    for assignment in session.exec(query).all():
        for day in occupied_days(assignment.start_date, assignment.hours_allocated):
            occupation[day].add(assignment.mechanic_id)
    return occupation


def get_unavailable_dates(session: Session) -> List[date]:
    """Dias em que nenhum mecânico ativo está livre."""
    mechanic_ids = {m.id for m in active_mechanics(session)}
    if not mechanic_ids:
        return []
    occupation = build_occupancy(session)
    return sorted(
        day for day, busy in occupation.items()
        if len(busy & mechanic_ids) >= len(mechanic_ids)
    )


def get_available_mechanics(session: Session, day, exclude_quote_id: Optional[int] = None) -> List[User]:
    day = as_day(day)
    busy = build_occupancy(session, exclude_quote_id).get(day, set())
    return [m for m in active_mechanics(session) if m.id not in busy]


def conflicting_days(
    session: Session,
    mechanic_id: int,
    start_date,
    hours,
    exclude_quote_id: Optional[int] = None,
    occupation: Optional[Dict[date, Set[int]]] = None,
) -> List[date]:
    """Dias da alocação proposta em que o mecânico já está ocupado em outro orçamento."""
    if occupation is None:
        occupation = build_occupancy(session, exclude_quote_id)
    return [
        day for day in occupied_days(start_date, hours)
        if mechanic_id in occupation.get(day, ())
    ]


def iso_dates(days: Iterable[date]) -> List[str]:
    return [d.isoformat() for d in days]
