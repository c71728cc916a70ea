import os

os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("GOOGLE_API_KEY", "test-key")

from datetime import date

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from garage import catalog, quotes
from garage.database import build_engine, create_db_and_tables
from garage.models import Role
from garage.permissions import Actor

TODAY = date(2024, 1, 1)


def actor_of(user) -> Actor:
    return Actor(user_id=user.id, role=user.role)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def manager(session):
    return catalog.create_user(session, "Maria", "Gerente", "maria@oficina.test", Role.MANAGER)


@pytest.fixture
def client(session):
    return catalog.create_user(session, "Carlos", "Cliente", "carlos@cliente.test", Role.CLIENT, phone="11 99999 0000")


@pytest.fixture
def other_client(session):
    return catalog.create_user(session, "Ana", "Outra", "ana@cliente.test", Role.CLIENT)


@pytest.fixture
def mechanic_x(session):
    return catalog.create_user(session, "Xavier", "Mecanico", "x@oficina.test", Role.MECHANIC, hourly_rate=50)


@pytest.fixture
def mechanic_y(session):
    return catalog.create_user(session, "Yuri", "Mecanico", "y@oficina.test", Role.MECHANIC, hourly_rate=40)


@pytest.fixture
def vehicle(session, client):
    return catalog.create_vehicle(session, actor_of(client), None, "abc1d23", "Volkswagen", "Gol", 2015)


@pytest.fixture
def service(session, manager):
    return catalog.create_service(session, actor_of(manager), "Troca de óleo", "manutenção", tax_rate=20)


@pytest.fixture
def brake_service(session, manager):
    return catalog.create_service(session, actor_of(manager), "Freios", "segurança", tax_rate=10)


@pytest.fixture
def pack(session, manager, service, brake_service):
    return catalog.create_pack(session, actor_of(manager), "Revisão completa", [service.id, brake_service.id], tax_rate=20)


@pytest.fixture
def make_quote(session, client, vehicle):
    def _make(problem="Barulho no motor"):
        return quotes.create_quote(session, actor_of(client), None, vehicle.id, problem)
    return _make


@pytest.fixture
def finalized_quote(session, manager, make_quote, service, pack, mechanic_x):
    """Orçamento finalizado: serviço 100 + pacote 200 + avulso 20 x 2 + 4h x 50."""
    quote = make_quote()
    return quotes.finalize_quote(
        session, actor_of(manager), quote.id,
        services=[{"service_id": service.id, "price": 100}],
        packs=[{"pack_id": pack.id, "price": 200}],
        adhoc_lines=[{"name": "Filtro", "price": 20, "quantity": 2}],
        mechanics=[{"mechanic_id": mechanic_x.id, "hours": 4, "start_date": date(2024, 2, 1)}],
        today=TODAY,
    )


@pytest.fixture
def accepted_repair(session, client, finalized_quote):
    return quotes.accept_quote(session, actor_of(client), finalized_quote.id)
