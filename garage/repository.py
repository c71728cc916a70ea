"""Acesso comum ao banco usado pelos serviços."""
import math
from contextlib import contextmanager
from typing import List, Type, TypeVar

from sqlalchemy import update
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, SQLModel, func, select

from garage.errors import Conflict, NotFound
from garage.models import Quote, QuoteMechanic, RepairMechanic

T = TypeVar("T", bound=SQLModel)


def get_or_404(session: Session, model: Type[T], id, label: str = None) -> T:
    obj = session.get(model, id) if id is not None else None
    if not obj:
        raise NotFound(f"{label or model.__name__} não encontrado(a) (id={id})")
    return obj


def bump_version(session: Session, quote: Quote):
    """
    Incrementa a versão do orçamento somente se ela não mudou desde a leitura.
    Serializa as mutações por orçamento (controle otimista).
    """
    expected = quote.version
    result = session.connection().execute(
        update(Quote)
        .where(Quote.id == quote.id, Quote.version == expected)
        .values(version=expected + 1)
    )
    if result.rowcount != 1:
        raise Conflict(f"Orçamento {quote.id} foi alterado por outra operação; tente novamente")
    set_committed_value(quote, "version", expected + 1)


def quote_mechanic_ids(session: Session, quote_id: int) -> List[int]:
    return session.exec(
        select(QuoteMechanic.mechanic_id).where(QuoteMechanic.quote_id == quote_id)
    ).all()


def repair_mechanic_ids(session: Session, repair_id: int) -> List[int]:
    return session.exec(
        select(RepairMechanic.mechanic_id).where(RepairMechanic.repair_id == repair_id)
    ).all()


@contextmanager
def atomic(session: Session):
    """Commit ao final do bloco; rollback se algo falhar no meio."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def paginate(session: Session, query, page: int = 1, limit: int = 10) -> dict:
    page = max(int(page or 1), 1)
    limit = max(int(limit or 10), 1)
    total = session.exec(select(func.count()).select_from(query.subquery())).one()
    items = session.exec(query.offset((page - 1) * limit).limit(limit)).all()
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "items": items,
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
