"""Cadastro de usuários, veículos, serviços e pacotes."""
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from garage.errors import Conflict, ValidationError
from garage.logger import logger
from garage.models import Role, Service, ServicePack, ServicePackItem, User, Vehicle
from garage.permissions import Action, Actor, Resource, require
from garage.repository import atomic, get_or_404


def create_user(session: Session, first_name: str, last_name: str, email: str, role=Role.CLIENT,
                phone: Optional[str] = None, hourly_rate: Optional[float] = None) -> User:
    if not first_name or not last_name or not email:
        raise ValidationError("Nome, sobrenome e email são obrigatórios")
    try:
        role = Role(role)
    except ValueError:
        raise ValidationError(f"Papel inválido: {role!r}")
    if hourly_rate is not None and hourly_rate < 0:
        raise ValidationError("O valor da hora não pode ser negativo")

    user = User(
        first_name=first_name, last_name=last_name, email=email.strip().lower(),
        role=role, phone=phone, hourly_rate=hourly_rate,
    )
    try:
        with atomic(session):
            session.add(user)
    except IntegrityError:
        raise Conflict(f"Já existe um usuário com o email {email}")
    session.refresh(user)
    logger.info(f"Usuário {user.id} ({role.value}) criado")
    return user


def deactivate_user(session: Session, actor: Actor, user_id: int) -> User:
    require(actor, Action.CATALOG_MANAGE)
    user = get_or_404(session, User, user_id, "Usuário")
    with atomic(session):
        user.is_active = False
        session.add(user)
    session.refresh(user)
    return user


def list_users(session: Session, role: Optional[Role] = None, active_only: bool = False) -> List[User]:
    query = select(User)
    if role:
        query = query.where(User.role == role)
    if active_only:
        query = query.where(User.is_active == True)  # noqa: E712
    return session.exec(query.order_by(User.last_name, User.first_name)).all()


def create_vehicle(session: Session, actor: Actor, client_id: Optional[int], plate: str, make: str, model: str,
                   year: Optional[int] = None) -> Vehicle:
    if actor.role == Role.CLIENT:
        client_id = actor.user_id
    require(actor, Action.QUOTE_CREATE, Resource(owner_id=client_id), "Acesso não autorizado a este cliente")
    client = get_or_404(session, User, client_id, "Cliente")
    if client.role != Role.CLIENT:
        raise ValidationError(f"O usuário {client_id} não é um cliente")
    if not plate or not make or not model:
        raise ValidationError("Placa, marca e modelo são obrigatórios")

    vehicle = Vehicle(client_id=client.id, plate=plate.strip().upper(), make=make, model=model, year=year)
    with atomic(session):
        session.add(vehicle)
    session.refresh(vehicle)
    return vehicle


def list_vehicles(session: Session, client_id: int) -> List[Vehicle]:
    return session.exec(select(Vehicle).where(Vehicle.client_id == client_id).order_by(Vehicle.id)).all()


def create_service(session: Session, actor: Actor, name: str, type: str, description: Optional[str] = None,
                   tax_rate: Optional[float] = None) -> Service:
    require(actor, Action.CATALOG_MANAGE, message="Somente um gerente pode alterar o catálogo")
    if not name or not type:
        raise ValidationError("Nome e tipo do serviço são obrigatórios")
    service = Service(name=name, type=type, description=description, tax_rate=tax_rate)
    try:
        with atomic(session):
            session.add(service)
    except IntegrityError:
        raise Conflict(f"Já existe um serviço chamado '{name}'")
    session.refresh(service)
    return service


def list_services(session: Session, search: str = "") -> List[Service]:
    query = select(Service)
    if search:
        query = query.where(
            (Service.name.ilike(f"%{search}%")) |
            (Service.type.ilike(f"%{search}%"))
        )
    return session.exec(query.order_by(Service.name)).all()


def create_pack(session: Session, actor: Actor, name: str, service_ids: List[int], discount: float = 0.0,
                tax_rate: Optional[float] = None) -> ServicePack:
    require(actor, Action.CATALOG_MANAGE, message="Somente um gerente pode alterar o catálogo")
    if not name:
        raise ValidationError("O nome do pacote é obrigatório")
    if not service_ids:
        raise ValidationError("Um pacote precisa de ao menos um serviço")
    if discount is not None and (discount < 0 or discount > 100):
        raise ValidationError("O desconto do pacote deve estar entre 0 e 100")
    for service_id in service_ids:
        get_or_404(session, Service, service_id, "Serviço")

    pack = ServicePack(name=name, discount=discount or 0.0, tax_rate=tax_rate)
    try:
        with atomic(session):
            session.add(pack)
            session.flush()
            for service_id in dict.fromkeys(service_ids):
                session.add(ServicePackItem(pack_id=pack.id, service_id=service_id))
    except IntegrityError:
        raise Conflict(f"Já existe um pacote chamado '{name}'")
    session.refresh(pack)
    return pack


def pack_services(session: Session, pack_id: int) -> List[Service]:
    return session.exec(
        select(Service)
        .join(ServicePackItem, ServicePackItem.service_id == Service.id)
        .where(ServicePackItem.pack_id == pack_id)
        .order_by(Service.name)
    ).all()


def list_packs(session: Session) -> List[ServicePack]:
    return session.exec(select(ServicePack).order_by(ServicePack.name)).all()
