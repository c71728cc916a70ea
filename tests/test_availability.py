from datetime import date

import pytest

from garage import availability, quotes
from garage.errors import MechanicUnavailable
from tests.conftest import TODAY, actor_of


def _book(session, manager, make_quote, service, mechanic, hours, start):
    quote = make_quote(f"Reserva de {mechanic.first_name}")
    quotes.add_service_line(session, actor_of(manager), quote.id, service.id, 50)
    quotes.assign_mechanics(session, actor_of(manager), quote.id, [mechanic.id], [hours], [start], today=TODAY)
    return quote


def test_work_days_rounds_up():
    assert availability.work_days(16) == 2
    assert availability.work_days(17) == 3
    assert availability.work_days(1) == 1
    assert availability.work_days(0) == 0
    assert availability.work_days(None) == 0


def test_occupied_days_without_start_is_empty():
    assert availability.occupied_days(None, 40) == []
    assert availability.occupied_days("2024-01-10T09:30:00", 16) == [date(2024, 1, 10), date(2024, 1, 11)]


def test_busy_mechanic_excluded_on_booked_days(session, manager, make_quote, service, mechanic_x, mechanic_y):
    _book(session, manager, make_quote, service, mechanic_x, 16, date(2024, 1, 10))

    for day in (date(2024, 1, 10), date(2024, 1, 11)):
        ids = [m.id for m in availability.get_available_mechanics(session, day)]
        assert ids == [mechanic_y.id]

    ids = [m.id for m in availability.get_available_mechanics(session, date(2024, 1, 12))]
    assert ids == [mechanic_x.id, mechanic_y.id]
    assert availability.get_unavailable_dates(session) == []


def test_days_unavailable_when_everyone_is_booked(session, manager, make_quote, service, mechanic_x, mechanic_y):
    _book(session, manager, make_quote, service, mechanic_x, 16, date(2024, 1, 10))
    _book(session, manager, make_quote, service, mechanic_y, 16, date(2024, 1, 10))

    assert availability.get_unavailable_dates(session) == [date(2024, 1, 10), date(2024, 1, 11)]
    assert availability.get_available_mechanics(session, "2024-01-11") == []


def test_assignments_without_start_or_hours_book_nothing(session, manager, make_quote, service, mechanic_x):
    _book(session, manager, make_quote, service, mechanic_x, 0, date(2024, 1, 10))
    _book(session, manager, make_quote, service, mechanic_x, 24, None)

    assert availability.get_unavailable_dates(session) == []
    assert len(availability.get_available_mechanics(session, date(2024, 1, 10))) == 1


def test_no_mechanics_means_no_unavailable_dates(session):
    assert availability.get_unavailable_dates(session) == []


def test_refused_quotes_release_the_mechanic(session, manager, client, make_quote, service, mechanic_x):
    quote = _book(session, manager, make_quote, service, mechanic_x, 8, date(2024, 1, 10))
    quotes.finalize_quote(session, actor_of(manager), quote.id, today=TODAY)
    # finalized não conta como ativo
    assert availability.get_unavailable_dates(session) == []

    quotes.refuse_quote(session, actor_of(client), quote.id)
    assert availability.get_unavailable_dates(session) == []


def test_double_booking_is_rejected(session, manager, make_quote, service, mechanic_x):
    _book(session, manager, make_quote, service, mechanic_x, 16, date(2024, 1, 10))
    with pytest.raises(MechanicUnavailable):
        _book(session, manager, make_quote, service, mechanic_x, 8, date(2024, 1, 11))
