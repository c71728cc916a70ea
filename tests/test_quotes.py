from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy import update
from sqlmodel import Session, select

from garage import catalog, quotes
from garage.database import build_engine, create_db_and_tables
from garage.errors import (
    AlreadyAccepted, AlreadyRefused, Conflict, EmptyQuote, Forbidden, InvalidState,
    MechanicUnavailable, NoMechanicAssigned, NotFound, PastDate, ValidationError,
)
from garage.models import Notification, NotificationType, Quote, QuoteStatus, RepairLine, RepairMechanic, RepairOrder, Role
from garage.repository import bump_version
from tests.conftest import TODAY, actor_of


class TestCreateQuote:
    def test_client_creates_for_self(self, session, client, other_client, vehicle):
        quote = quotes.create_quote(session, actor_of(client), other_client.id, vehicle.id, "  Freio chiando ")
        assert quote.client_id == client.id
        assert quote.status == QuoteStatus.PENDING
        assert quote.problem == "Freio chiando"
        assert quote.total == 0
        assert quote.version == 1

    def test_managers_are_notified(self, session, make_quote):
        quote = make_quote()
        notification = session.exec(select(Notification)).one()
        assert notification.type == NotificationType.QUOTE_REQUESTED
        assert notification.entity_id == quote.id

    def test_vehicle_must_belong_to_client(self, session, other_client, vehicle):
        with pytest.raises(ValidationError):
            quotes.create_quote(session, actor_of(other_client), None, vehicle.id, "Problema")

    def test_problem_is_required(self, session, client, vehicle):
        with pytest.raises(ValidationError):
            quotes.create_quote(session, actor_of(client), None, vehicle.id, "   ")

    def test_mechanic_cannot_create(self, session, mechanic_x, client, vehicle):
        with pytest.raises(Forbidden):
            quotes.create_quote(session, actor_of(mechanic_x), client.id, vehicle.id, "Problema")


class TestFinalizeQuote:
    def test_empty_quote_is_rejected_even_with_mechanics(self, session, manager, make_quote, mechanic_x):
        quote = make_quote()
        with pytest.raises(EmptyQuote):
            quotes.finalize_quote(
                session, actor_of(manager), quote.id,
                mechanics=[{"mechanic_id": mechanic_x.id, "hours": 2}], today=TODAY,
            )
        session.refresh(quote)
        assert quote.status == QuoteStatus.PENDING

    def test_mechanic_required(self, session, manager, make_quote, service):
        quote = make_quote()
        with pytest.raises(NoMechanicAssigned):
            quotes.finalize_quote(
                session, actor_of(manager), quote.id,
                services=[{"service_id": service.id, "price": 10}], today=TODAY,
            )

    def test_past_intervention_date(self, session, manager, make_quote, service, mechanic_x):
        quote = make_quote()
        with pytest.raises(PastDate):
            quotes.finalize_quote(
                session, actor_of(manager), quote.id,
                services=[{"service_id": service.id, "price": 10}],
                mechanics=[{"mechanic_id": mechanic_x.id, "hours": 2}],
                intervention_date=date(2023, 12, 31), today=TODAY,
            )

    def test_supplied_collections_replace_existing(self, session, manager, make_quote, service, brake_service, mechanic_x):
        quote = make_quote()
        quotes.add_service_line(session, actor_of(manager), quote.id, service.id, 999)
        quote = quotes.finalize_quote(
            session, actor_of(manager), quote.id,
            services=[{"service_id": brake_service.id, "price": 60}],
            mechanics=[{"mechanic_id": mechanic_x.id, "hours": 1}],
            today=TODAY,
        )
        detail = quotes.quote_detail(session, quote)
        assert [s["service_id"] for s in detail["services"]] == [brake_service.id]
        assert quote.total == 60 + 50
        assert quote.status == QuoteStatus.FINALIZED
        assert quote.responded_by == manager.id

    def test_hourly_rate_is_frozen(self, session, manager, finalized_quote, mechanic_x):
        mechanic_x.hourly_rate = 500
        session.add(mechanic_x)
        session.commit()
        detail = quotes.quote_detail(session, finalized_quote)
        assert detail["mechanics"][0]["hourly_rate"] == 50

    def test_cannot_finalize_accepted_quote(self, session, manager, accepted_repair, finalized_quote):
        with pytest.raises(InvalidState) as exc_info:
            quotes.finalize_quote(session, actor_of(manager), finalized_quote.id, today=TODAY)
        assert isinstance(exc_info.value, AlreadyAccepted)

    def test_client_cannot_finalize(self, session, client, make_quote):
        quote = make_quote()
        with pytest.raises(Forbidden):
            quotes.finalize_quote(session, actor_of(client), quote.id, today=TODAY)

    def test_unavailable_mechanic(self, session, manager, make_quote, service, mechanic_x):
        busy = make_quote("Primeiro")
        quotes.add_service_line(session, actor_of(manager), busy.id, service.id, 10)
        quotes.assign_mechanics(session, actor_of(manager), busy.id, [mechanic_x.id], [8], [date(2024, 3, 1)], today=TODAY)

        quote = make_quote("Segundo")
        with pytest.raises(MechanicUnavailable):
            quotes.finalize_quote(
                session, actor_of(manager), quote.id,
                services=[{"service_id": service.id, "price": 10}],
                mechanics=[{"mechanic_id": mechanic_x.id, "hours": 4}],
                intervention_date=date(2024, 3, 1), today=TODAY,
            )


class TestAssignMechanics:
    def test_lengths_must_match(self, session, manager, make_quote, mechanic_x):
        quote = make_quote()
        with pytest.raises(ValidationError):
            quotes.assign_mechanics(session, actor_of(manager), quote.id, [mechanic_x.id], [1, 2], today=TODAY)

    def test_duplicate_assignment(self, session, manager, make_quote, mechanic_x):
        quote = make_quote()
        quotes.assign_mechanics(session, actor_of(manager), quote.id, [mechanic_x.id], [2], today=TODAY)
        with pytest.raises(Conflict):
            quotes.assign_mechanics(session, actor_of(manager), quote.id, [mechanic_x.id], [3], today=TODAY)

    def test_unknown_mechanic(self, session, manager, make_quote, client):
        quote = make_quote()
        with pytest.raises(NotFound):
            quotes.assign_mechanics(session, actor_of(manager), quote.id, [client.id], [2], today=TODAY)

    def test_labor_added_to_total(self, session, manager, make_quote, mechanic_x, mechanic_y):
        quote = make_quote()
        quote = quotes.assign_mechanics(
            session, actor_of(manager), quote.id, [mechanic_x.id, mechanic_y.id], [2, 3], today=TODAY,
        )
        assert quote.total == 2 * 50 + 3 * 40


class TestAcceptQuote:
    def test_creates_repair_with_snapshot(self, session, accepted_repair, finalized_quote, mechanic_x):
        session.refresh(finalized_quote)
        assert finalized_quote.status == QuoteStatus.ACCEPTED
        assert accepted_repair.quote_id == finalized_quote.id
        assert accepted_repair.estimated_cost == finalized_quote.total
        assert accepted_repair.planned_start == date(2024, 2, 1)

        lines = session.exec(select(RepairLine).where(RepairLine.repair_id == accepted_repair.id)).all()
        assert sorted(line.designation for line in lines) == ["Filtro", "Pacote: Revisão completa", "Troca de óleo"]
        mechanics = session.exec(select(RepairMechanic).where(RepairMechanic.repair_id == accepted_repair.id)).all()
        assert [m.mechanic_id for m in mechanics] == [mechanic_x.id]

    def test_accept_is_idempotent(self, session, client, accepted_repair, finalized_quote):
        again = quotes.accept_quote(session, actor_of(client), finalized_quote.id)
        assert again.id == accepted_repair.id
        assert len(session.exec(select(RepairOrder)).all()) == 1

    def test_pending_quote_cannot_be_accepted(self, session, client, make_quote):
        quote = make_quote()
        with pytest.raises(InvalidState):
            quotes.accept_quote(session, actor_of(client), quote.id)

    def test_only_owner_can_accept(self, session, other_client, finalized_quote):
        with pytest.raises(Forbidden):
            quotes.accept_quote(session, actor_of(other_client), finalized_quote.id)

    def test_zero_priced_quote(self, session, manager, client, make_quote, service, mechanic_x):
        quote = make_quote()
        quotes.finalize_quote(
            session, actor_of(manager), quote.id,
            services=[{"service_id": service.id, "price": 0}],
            mechanics=[{"mechanic_id": mechanic_x.id, "hours": 1}],
            today=TODAY,
        )
        with pytest.raises(EmptyQuote):
            quotes.accept_quote(session, actor_of(client), quote.id)

    def test_notifies_manager_and_mechanics(self, session, accepted_repair, mechanic_x):
        types = [n.type for n in session.exec(select(Notification)).all()]
        assert NotificationType.QUOTE_ACCEPTED in types
        assigned = session.exec(
            select(Notification).where(Notification.type == NotificationType.REPAIR_ASSIGNED)
        ).one()
        assert assigned.recipient_id == mechanic_x.id


class TestRefuseQuote:
    def test_refuse_finalized(self, session, client, finalized_quote):
        quote = quotes.refuse_quote(session, actor_of(client), finalized_quote.id)
        assert quote.status == QuoteStatus.REFUSED

        with pytest.raises(AlreadyRefused):
            quotes.accept_quote(session, actor_of(client), quote.id)
        with pytest.raises(AlreadyRefused):
            quotes.refuse_quote(session, actor_of(client), quote.id)

    def test_cannot_refuse_accepted(self, session, client, accepted_repair, finalized_quote):
        with pytest.raises(AlreadyAccepted):
            quotes.refuse_quote(session, actor_of(client), finalized_quote.id)

    def test_cannot_refuse_pending(self, session, client, make_quote):
        with pytest.raises(InvalidState):
            quotes.refuse_quote(session, actor_of(client), make_quote().id)


class TestQueries:
    def test_list_quotes_filters_and_paginates(self, session, make_quote, other_client):
        for i in range(3):
            make_quote(f"Problema {i}")
        make_quote("Ar condicionado fraco")

        result = quotes.list_quotes(session, search="problema", limit=2)
        assert result["pagination"]["total"] == 3
        assert result["pagination"]["total_pages"] == 2
        assert result["pagination"]["has_next"] is True
        assert len(result["items"]) == 2

        assert quotes.list_quotes(session, client_id=other_client.id)["items"] == []

    def test_list_for_mechanic(self, session, finalized_quote, mechanic_x, mechanic_y):
        assert [q.id for q in quotes.list_quotes_for_mechanic(session, mechanic_x.id)["items"]] == [finalized_quote.id]
        assert quotes.list_quotes_for_mechanic(session, mechanic_y.id)["items"] == []

    def test_assigned_mechanic_can_view(self, session, finalized_quote, mechanic_x, mechanic_y):
        assert quotes.get_quote(session, actor_of(mechanic_x), finalized_quote.id).id == finalized_quote.id
        with pytest.raises(Forbidden):
            quotes.get_quote(session, actor_of(mechanic_y), finalized_quote.id)


class TestChat:
    def test_client_message_notifies_managers(self, session, client, manager, finalized_quote):
        quotes.post_chat_message(session, actor_of(client), finalized_quote.id, "Quando fica pronto?")
        quotes.post_chat_message(session, actor_of(manager), finalized_quote.id, "Amanhã")

        messages = quotes.get_chat_messages(session, actor_of(client), finalized_quote.id)
        assert [m.message for m in messages] == ["Quando fica pronto?", "Amanhã"]
        assert messages[0].sender_name == "Carlos Cliente"

        chat = session.exec(
            select(Notification).where(Notification.type == NotificationType.NEW_CHAT_MESSAGE)
            .order_by(Notification.id)
        ).all()
        assert chat[0].recipient_role == "manager"
        assert chat[1].recipient_id == client.id

    def test_outsider_cannot_chat(self, session, other_client, finalized_quote):
        with pytest.raises(Forbidden):
            quotes.post_chat_message(session, actor_of(other_client), finalized_quote.id, "Oi")

    def test_empty_message(self, session, client, finalized_quote):
        with pytest.raises(ValidationError):
            quotes.post_chat_message(session, actor_of(client), finalized_quote.id, " ")


@pytest.fixture
def file_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'quotes.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


def _seed_finalized_quote(engine):
    with Session(engine) as session:
        manager = actor_of(catalog.create_user(session, "Maria", "Gerente", "maria@oficina.test", Role.MANAGER))
        client = actor_of(catalog.create_user(session, "Carlos", "Cliente", "carlos@cliente.test", Role.CLIENT))
        mechanic = catalog.create_user(session, "Xavier", "Mecanico", "x@oficina.test", Role.MECHANIC, hourly_rate=50)
        vehicle = catalog.create_vehicle(session, client, None, "abc1d23", "Fiat", "Uno", 2015)
        service = catalog.create_service(session, manager, "Troca de óleo", "manutenção", tax_rate=20)
        quote = quotes.create_quote(session, client, None, vehicle.id, "Motor falhando")
        quotes.finalize_quote(
            session, manager, quote.id,
            services=[{"service_id": service.id, "price": 100}],
            mechanics=[{"mechanic_id": mechanic.id, "hours": 4, "start_date": date(2024, 2, 1)}],
            today=TODAY,
        )
        return client, quote.id


class TestConcurrentChanges:
    def test_stale_version_is_rejected(self, session, finalized_quote):
        version = finalized_quote.version
        session.connection().execute(
            update(Quote).where(Quote.id == finalized_quote.id).values(version=version + 1)
        )
        with pytest.raises(Conflict):
            bump_version(session, finalized_quote)
        session.rollback()

    def test_concurrent_accepts_create_one_repair(self, file_engine):
        client, quote_id = _seed_finalized_quote(file_engine)

        def accept(_):
            with Session(file_engine) as session:
                return quotes.accept_quote(session, client, quote_id).id

        with ThreadPoolExecutor(max_workers=8) as pool:
            repair_ids = set(pool.map(accept, range(16)))

        assert len(repair_ids) == 1
        with Session(file_engine) as session:
            repairs = session.exec(select(RepairOrder)).all()
            assert [r.id for r in repairs] == list(repair_ids)
            assert session.get(Quote, quote_id).status == QuoteStatus.ACCEPTED

    def test_stale_accept_returns_existing_repair(self, file_engine):
        client, quote_id = _seed_finalized_quote(file_engine)

        with Session(file_engine, expire_on_commit=False) as stale:
            quote = stale.get(Quote, quote_id)
            stale.commit()

            with Session(file_engine) as other:
                winner_id = quotes.accept_quote(other, client, quote_id).id

            # a sessão antiga ainda vê o orçamento como finalizado
            assert quote.status == QuoteStatus.FINALIZED
            repair = quotes.accept_quote(stale, client, quote_id)
            assert repair.id == winner_id

        with Session(file_engine) as session:
            assert len(session.exec(select(RepairOrder)).all()) == 1
