from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session

from garage import config
from garage import models  # noqa: F401  (registra as tabelas no metadata)


def build_engine(url: str = config.DATABASE_URL, **kwargs):
    """
    Cria o engine do banco.
    Para SQLite, as transações de escrita começam com BEGIN IMMEDIATE: escritores
    concorrentes esperam o lock (timeout) em vez de falhar na promoção do lock.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, **kwargs)

    # Configurações para SQLite (necessário para evitar erros de thread)
    connect_args = {"check_same_thread": False, "timeout": 30}
    connect_args.update(kwargs.pop("connect_args", {}))
    engine = create_engine(url, connect_args=connect_args, **kwargs)

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = build_engine()


def create_db_and_tables(bind=None):
    """
    Cria o banco de dados e todas as tabelas definidas nos modelos.
    Deve ser chamado na inicialização da aplicação.
    """
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    """
    Dependência para obter uma sessão do banco de dados.
    Gerencia o ciclo de vida da sessão (abre e fecha automaticamente).
    """
    # Objetos retornados pela rota continuam legíveis depois do commit
    with Session(engine, expire_on_commit=False) as session:
        yield session
