"""Contadores nomeados com incremento atômico (numeração de faturas)."""
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from garage.models import Counter


def _increment(session: Session, name: str):
    statement = (
        update(Counter)
        .where(Counter.name == name)
        .values(value=Counter.value + 1)
        .returning(Counter.value)
    )
    return session.connection().execute(statement).scalar()


def next_value(session: Session, name: str) -> int:
    """
    Incrementa e lê o contador num único UPDATE ... RETURNING, dentro da
    transação do chamador: se ela for desfeita, o número volta junto.
    """
    value = _increment(session, name)
    if value is None:
        # Primeira utilização: cria a linha (outra transação pode ter criado antes)
        try:
            with session.begin_nested():
                session.connection().execute(insert(Counter).values(name=name, value=0))
        except IntegrityError:
            pass
        value = _increment(session, name)
    return value
