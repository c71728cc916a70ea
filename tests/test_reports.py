from types import SimpleNamespace

import pytest
from sqlmodel import Session, select

from garage import catalog, reports
from garage.database import build_engine, create_db_and_tables
from garage.models import RepairLine, Role, User


@pytest.fixture
def engine(tmp_path):
    # Arquivo com timeout curto: um lock esquecido vira erro em vez de espera
    engine = build_engine(f"sqlite:///{tmp_path / 'reports.db'}", connect_args={"timeout": 0.5})
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


class FakeModel:
    def __init__(self, text=None, error=None, during_call=None):
        self.text = text
        self.error = error
        self.during_call = during_call
        self.prompts = []

    def generate_content(self, prompt):
        self.prompts.append(prompt)
        if self.during_call:
            self.during_call()
        if self.error:
            raise self.error
        return SimpleNamespace(text=self.text)


def test_report_uses_only_repair_lines(session, accepted_repair, monkeypatch):
    fake = FakeModel(text="Olá Carlos, seu carro está pronto.")
    monkeypatch.setattr(reports, "model", fake)

    html = reports.generate_client_message(session, accepted_repair)

    assert "Olá Carlos, seu carro está pronto." in html
    assert "https://wa.me/11999990000" in html
    prompt = fake.prompts[0]
    assert "Troca de óleo" in prompt
    assert "Pacote: Revisão completa" in prompt
    assert "Volkswagen Gol" in prompt


def test_database_is_writable_during_ai_call(engine, session, accepted_repair, monkeypatch):
    def write_from_other_session():
        with Session(engine) as other:
            catalog.create_user(other, "Bruna", "Mecanica", "bruna@oficina.test", Role.MECHANIC)

    monkeypatch.setattr(reports, "model", FakeModel(text="Carro pronto.", during_call=write_from_other_session))

    html = reports.generate_client_message(session, accepted_repair)

    assert "Erro IA" not in html
    assert "Carro pronto." in html
    with Session(engine) as check:
        assert check.exec(select(User).where(User.email == "bruna@oficina.test")).one()


def test_ai_failure_is_rendered_not_raised(session, accepted_repair, monkeypatch):
    monkeypatch.setattr(reports, "model", FakeModel(error=RuntimeError("quota excedida")))
    html = reports.generate_client_message(session, accepted_repair)
    assert "Erro IA: quota excedida" in html


def test_repair_without_lines(session, accepted_repair, monkeypatch):
    fake = FakeModel(text="nunca chamado")
    monkeypatch.setattr(reports, "model", fake)
    for line in session.exec(select(RepairLine)).all():
        session.delete(line)
    session.commit()

    html = reports.generate_client_message(session, accepted_repair)
    assert "alert-warning" in html
    assert fake.prompts == []
