"""
Ciclo de vida do orçamento.

    pending --finalize (gerente)--> finalized --accept (cliente)--> accepted
                                              \\-refuse (cliente)--> refused

accepted e refused são estados finais. A aceitação cria exatamente uma ordem
de reparação por orçamento, mesmo se for repetida.
"""
from datetime import date, datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from garage import availability
from garage.errors import (
    AlreadyAccepted, AlreadyFinalized, AlreadyRefused, Conflict, EmptyQuote,
    InvalidState, MechanicUnavailable, NoMechanicAssigned, NotFound, PastDate,
    ValidationError,
)
from garage.logger import logger
from garage.models import (
    ItemType, NotificationType, Quote, QuoteAdhocLine, QuoteMechanic, QuoteMessage,
    QuotePackLine, QuoteServiceLine, QuoteStatus, RepairLine, RepairMechanic,
    RepairOrder, Role, Service, ServicePack, User, Vehicle,
)
from garage.notifications import notify
from garage.permissions import Action, Actor, Resource, require
from garage.pricing import compute_total, load_quote_items, recompute_total
from garage.repository import (
    atomic, bump_version, get_or_404, paginate, quote_mechanic_ids,
)

ALREADY = {
    QuoteStatus.FINALIZED: AlreadyFinalized,
    QuoteStatus.ACCEPTED: AlreadyAccepted,
    QuoteStatus.REFUSED: AlreadyRefused,
}


def _get(data, name, default=None):
    if isinstance(data, dict):
        return data.get(name, default)
    return getattr(data, name, default)


def quote_resource(session: Session, quote: Quote) -> Resource:
    return Resource(owner_id=quote.client_id, mechanic_ids=frozenset(quote_mechanic_ids(session, quote.id)))


def _ensure_pending(quote: Quote):
    if quote.status != QuoteStatus.PENDING:
        raise ALREADY[quote.status](f"Orçamento {quote.id} já está '{quote.status.value}'")


def _check_price(price, label):
    if price is None:
        raise ValidationError(f"Preço obrigatório para {label}")
    if price < 0:
        raise ValidationError(f"Preço negativo para {label}")


def _check_not_past(day: Optional[date], today: date, label: str):
    if day is not None and day < today:
        raise PastDate(f"{label} ({day.isoformat()}) está no passado")


# --- Criação e consulta ---

def create_quote(session: Session, actor: Actor, client_id: Optional[int], vehicle_id: int, problem: str) -> Quote:
    if actor.role == Role.CLIENT:
        client_id = actor.user_id
    require(actor, Action.QUOTE_CREATE, Resource(owner_id=client_id))

    if not problem or not problem.strip():
        raise ValidationError("A descrição do problema é obrigatória")
    client = get_or_404(session, User, client_id, "Cliente")
    if client.role != Role.CLIENT:
        raise ValidationError(f"O usuário {client_id} não é um cliente")
    vehicle = get_or_404(session, Vehicle, vehicle_id, "Veículo")
    if vehicle.client_id != client.id:
        raise ValidationError("O veículo não pertence ao cliente")

    quote = Quote(client_id=client.id, vehicle_id=vehicle.id, problem=problem.strip())
    with atomic(session):
        session.add(quote)
    session.refresh(quote)
    logger.info(f"Orçamento {quote.id} criado para o cliente {client.id}")

    notify(
        session, NotificationType.QUOTE_REQUESTED,
        f"Novo pedido de orçamento de {client.full_name}", f"/quotes/{quote.id}",
        recipient_role=Role.MANAGER, sender_id=actor.user_id, entity_id=quote.id,
    )
    return quote


def get_quote(session: Session, actor: Actor, quote_id: int) -> Quote:
    quote = get_or_404(session, Quote, quote_id, "Orçamento")
    require(actor, Action.QUOTE_VIEW, quote_resource(session, quote), "Acesso não autorizado a este orçamento")
    return quote


def quote_detail(session: Session, quote: Quote) -> dict:
    session.refresh(quote)
    items = load_quote_items(session, quote.id)
    return {
        **quote.model_dump(),
        "services": [s.model_dump() for s in items["services"]],
        "packs": [p.model_dump() for p in items["packs"]],
        "adhoc_lines": [a.model_dump() for a in items["adhoc_lines"]],
        "mechanics": [m.model_dump() for m in items["mechanics"]],
    }


def list_quotes(
    session: Session,
    status: Optional[QuoteStatus] = None,
    client_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    query = select(Quote)
    if status:
        query = query.where(Quote.status == status)
    if client_id:
        query = query.where(Quote.client_id == client_id)
    if date_from:
        query = query.where(Quote.created_at >= date_from)
    if date_to:
        query = query.where(Quote.created_at <= date_to)
    if search:
        query = query.where(Quote.problem.ilike(f"%{search}%"))
    return paginate(session, query.order_by(Quote.created_at.desc(), Quote.id.desc()), page, limit)


def list_quotes_for_mechanic(session: Session, mechanic_id: int, status: Optional[QuoteStatus] = None,
                             page: int = 1, limit: int = 10) -> dict:
    query = (
        select(Quote)
        .join(QuoteMechanic, QuoteMechanic.quote_id == Quote.id)
        .where(QuoteMechanic.mechanic_id == mechanic_id)
    )
    if status:
        query = query.where(Quote.status == status)
    return paginate(session, query.order_by(Quote.created_at.desc(), Quote.id.desc()), page, limit)


# --- Edição pelo gerente (somente em pending) ---

def _build_service_line(session, quote_id, data) -> QuoteServiceLine:
    service = get_or_404(session, Service, _get(data, "service_id"), "Serviço")
    price = _get(data, "price")
    _check_price(price, f"o serviço {service.name}")
    return QuoteServiceLine(
        quote_id=quote_id, service_id=service.id, price=price,
        note=_get(data, "note"), priority=_get(data, "priority") or 0,
    )


def _build_pack_line(session, quote_id, data) -> QuotePackLine:
    pack = get_or_404(session, ServicePack, _get(data, "pack_id"), "Pacote")
    price = _get(data, "price")
    _check_price(price, f"o pacote {pack.name}")
    return QuotePackLine(
        quote_id=quote_id, pack_id=pack.id, price=price,
        note=_get(data, "note"), priority=_get(data, "priority") or 0,
    )


def _build_adhoc_line(quote_id, data) -> QuoteAdhocLine:
    name = _get(data, "name")
    if not name:
        raise ValidationError("Linha avulsa sem nome")
    price = _get(data, "price")
    _check_price(price, f"a linha '{name}'")
    quantity = _get(data, "quantity", 1)
    if quantity is None or quantity <= 0:
        raise ValidationError(f"Quantidade inválida para a linha '{name}'")
    return QuoteAdhocLine(
        quote_id=quote_id, name=name, price=price, quantity=quantity,
        category=_get(data, "category"), note=_get(data, "note"),
        priority=_get(data, "priority") or 0,
    )


def _build_assignments(session, quote, entries, default_start, today, existing_ids=()) -> List[QuoteMechanic]:
    """Valida mecânicos, horas e agenda; congela o valor da hora."""
    seen = set(existing_ids)
    occupation = availability.build_occupancy(session, exclude_quote_id=quote.id)
    assignments = []
    for entry in entries:
        mechanic_id = _get(entry, "mechanic_id")
        mechanic = get_or_404(session, User, mechanic_id, "Mecânico")
        if mechanic.role != Role.MECHANIC or not mechanic.is_active:
            raise NotFound(f"Mecânico {mechanic_id} não encontrado ou inativo")
        if mechanic.id in seen:
            raise Conflict(f"O mecânico {mechanic.id} já está alocado neste orçamento")
        seen.add(mechanic.id)

        hours = _get(entry, "hours")
        if hours is None:
            hours = _get(entry, "hours_allocated")
        hours = hours or 0
        if hours < 0:
            raise ValidationError(f"Horas negativas para o mecânico {mechanic.id}")

        start = _get(entry, "start_date") or default_start
        start = availability.as_day(start) if start else None
        _check_not_past(start, today, f"Início do mecânico {mechanic.id}")
        busy = availability.conflicting_days(session, mechanic.id, start, hours, occupation=occupation)
        if busy:
            raise MechanicUnavailable(
                f"Mecânico {mechanic.full_name} indisponível em {', '.join(availability.iso_dates(busy))}"
            )

        assignments.append(QuoteMechanic(
            quote_id=quote.id, mechanic_id=mechanic.id, hourly_rate=mechanic.hourly_rate or 0.0,
            hours_allocated=hours, start_date=start,
        ))
    return assignments


def _load_for_edit(session: Session, actor: Actor, quote_id: int) -> Quote:
    quote = get_or_404(session, Quote, quote_id, "Orçamento")
    require(actor, Action.QUOTE_EDIT, message="Somente um gerente pode editar o orçamento")
    _ensure_pending(quote)
    return quote


def _save_lines(session: Session, quote: Quote, lines: Iterable) -> Quote:
    with atomic(session):
        for line in lines:
            session.add(line)
        recompute_total(session, quote)
        bump_version(session, quote)
    session.refresh(quote)
    return quote


def add_service_line(session: Session, actor: Actor, quote_id: int, service_id: int, price: float,
                     note: Optional[str] = None, priority: int = 0) -> Quote:
    quote = _load_for_edit(session, actor, quote_id)
    line = _build_service_line(session, quote.id, {"service_id": service_id, "price": price, "note": note, "priority": priority})
    return _save_lines(session, quote, [line])


def add_pack_line(session: Session, actor: Actor, quote_id: int, pack_id: int, price: float,
                  note: Optional[str] = None, priority: int = 0) -> Quote:
    quote = _load_for_edit(session, actor, quote_id)
    line = _build_pack_line(session, quote.id, {"pack_id": pack_id, "price": price, "note": note, "priority": priority})
    return _save_lines(session, quote, [line])


def add_adhoc_line(session: Session, actor: Actor, quote_id: int, line: dict) -> Quote:
    quote = _load_for_edit(session, actor, quote_id)
    return _save_lines(session, quote, [_build_adhoc_line(quote.id, line)])


def assign_mechanics(session: Session, actor: Actor, quote_id: int, mechanic_ids: List[int],
                     hours_per_mechanic: List[float], start_dates: Optional[List] = None,
                     today: Optional[date] = None) -> Quote:
    """Acrescenta mecânicos ao orçamento (um mecânico só pode aparecer uma vez)."""
    if not mechanic_ids or hours_per_mechanic is None:
        raise ValidationError("mechanic_ids e hours_per_mechanic são obrigatórios")
    if len(mechanic_ids) != len(hours_per_mechanic):
        raise ValidationError("O número de mecânicos não corresponde ao número de horas")
    if start_dates is not None and len(start_dates) != len(mechanic_ids):
        raise ValidationError("O número de datas de início não corresponde ao número de mecânicos")

    quote = _load_for_edit(session, actor, quote_id)
    starts = start_dates or [None] * len(mechanic_ids)
    entries = [
        {"mechanic_id": m, "hours": h, "start_date": s}
        for m, h, s in zip(mechanic_ids, hours_per_mechanic, starts)
    ]
    assignments = _build_assignments(
        session, quote, entries, quote.intervention_date, today or date.today(),
        existing_ids=quote_mechanic_ids(session, quote.id),
    )
    quote = _save_lines(session, quote, assignments)
    logger.info(f"Mecânicos {mechanic_ids} alocados no orçamento {quote.id}")
    return quote


# --- Transições ---

def finalize_quote(
    session: Session,
    actor: Actor,
    quote_id: int,
    services: Optional[list] = None,
    packs: Optional[list] = None,
    adhoc_lines: Optional[list] = None,
    mechanics: Optional[list] = None,
    intervention_date=None,
    today: Optional[date] = None,
) -> Quote:
    """
    Gerente finaliza o orçamento e o envia ao cliente.

    As coleções informadas substituem as existentes por inteiro (não há merge);
    coleções omitidas (None) ficam como estão.
    """
    today = today or date.today()
    quote = get_or_404(session, Quote, quote_id, "Orçamento")
    require(actor, Action.QUOTE_EDIT, message="Somente um gerente pode finalizar o orçamento")
    _ensure_pending(quote)

    intervention_day = availability.as_day(intervention_date) if intervention_date else quote.intervention_date
    if intervention_date:
        _check_not_past(intervention_day, today, "Data de intervenção")

    current = load_quote_items(session, quote.id)
    new_services = [_build_service_line(session, quote.id, s) for s in services] if services is not None else None
    new_packs = [_build_pack_line(session, quote.id, p) for p in packs] if packs is not None else None
    new_adhoc = [_build_adhoc_line(quote.id, a) for a in adhoc_lines] if adhoc_lines is not None else None

    item_count = sum(
        len(new if new is not None else current[key])
        for new, key in ((new_services, "services"), (new_packs, "packs"), (new_adhoc, "adhoc_lines"))
    )
    if item_count == 0:
        raise EmptyQuote("O orçamento precisa de ao menos um serviço, pacote ou linha avulsa")

    if mechanics is not None:
        new_mechanics = _build_assignments(session, quote, mechanics, intervention_day, today)
    else:
        new_mechanics = None
    if len(new_mechanics if new_mechanics is not None else current["mechanics"]) == 0:
        raise NoMechanicAssigned("O orçamento precisa de ao menos um mecânico alocado")

    with atomic(session):
        replacements = (
            (QuoteServiceLine, new_services),
            (QuotePackLine, new_packs),
            (QuoteAdhocLine, new_adhoc),
            (QuoteMechanic, new_mechanics),
        )
        for model, rows in replacements:
            if rows is None:
                continue
            for old in session.exec(select(model).where(model.quote_id == quote.id)).all():
                session.delete(old)
            session.flush()
            for row in rows:
                session.add(row)

        if intervention_date:
            quote.intervention_date = intervention_day
        recompute_total(session, quote)
        quote.status = QuoteStatus.FINALIZED
        quote.responded_by = actor.user_id
        quote.responded_at = datetime.now()
        bump_version(session, quote)
        session.add(quote)
    session.refresh(quote)
    logger.info(f"Orçamento {quote.id} finalizado pelo gerente {actor.user_id} (total={quote.total})")

    notify(
        session, NotificationType.QUOTE_FINALIZED,
        f"Seu orçamento #{quote.id} está pronto para análise", f"/quotes/{quote.id}",
        recipient_id=quote.client_id, sender_id=actor.user_id, entity_id=quote.id,
    )
    return quote


def _find_repair(session: Session, quote_id: int) -> Optional[RepairOrder]:
    return session.exec(select(RepairOrder).where(RepairOrder.quote_id == quote_id)).first()


def _snapshot_repair(session: Session, quote: Quote, items: dict) -> RepairOrder:
    starts = [m.start_date for m in items["mechanics"] if m.start_date]
    spans = [availability.occupied_days(m.start_date, m.hours_allocated) for m in items["mechanics"]]
    ends = [span[-1] for span in spans if span]
    repair = RepairOrder(
        quote_id=quote.id, client_id=quote.client_id, vehicle_id=quote.vehicle_id,
        problem=quote.problem, estimated_cost=quote.total,
        planned_start=quote.intervention_date or (min(starts) if starts else None),
        planned_end=max(ends) if ends else None,
    )
    session.add(repair)
    session.flush()

    for line in items["services"]:
        service = session.get(Service, line.service_id)
        session.add(RepairLine(
            repair_id=repair.id, kind=ItemType.SERVICE, ref_id=line.service_id,
            designation=service.name if service else f"Serviço {line.service_id}",
            price=line.price, quantity=1, note=line.note,
            tax_rate=service.tax_rate if service else None,
        ))
    for line in items["packs"]:
        pack = session.get(ServicePack, line.pack_id)
        session.add(RepairLine(
            repair_id=repair.id, kind=ItemType.PACK, ref_id=line.pack_id,
            designation=f"Pacote: {pack.name}" if pack else f"Pacote {line.pack_id}",
            price=line.price, quantity=1, note=line.note,
            tax_rate=pack.tax_rate if pack else None,
        ))
    for line in items["adhoc_lines"]:
        session.add(RepairLine(
            repair_id=repair.id, kind=ItemType.ADHOC, designation=line.name,
            price=line.price, quantity=line.quantity, note=line.note,
        ))
    for assignment in items["mechanics"]:
        session.add(RepairMechanic(repair_id=repair.id, mechanic_id=assignment.mechanic_id))
    return repair


def _find_or_create_repair(session: Session, quote: Quote, items: dict) -> RepairOrder:
    existing = _find_repair(session, quote.id)
    if existing:
        return existing
    try:
        with session.begin_nested():
            return _snapshot_repair(session, quote, items)
    except IntegrityError:
        # Outra aceitação criou a reparação primeiro
        return _find_repair(session, quote.id)


def accept_quote(session: Session, actor: Actor, quote_id: int) -> RepairOrder:
    """
    Cliente aceita o orçamento finalizado.
    Idempotente: aceitar de novo devolve a mesma ordem de reparação.
    """
    quote = get_or_404(session, Quote, quote_id, "Orçamento")
    require(actor, Action.QUOTE_RESPOND, Resource(owner_id=quote.client_id),
            "Você não está autorizado a aceitar este orçamento")

    if quote.status == QuoteStatus.ACCEPTED:
        repair = _find_repair(session, quote.id)
        if repair:
            logger.info(f"Orçamento {quote.id} já aceito; reparação {repair.id} reaproveitada")
            return repair
        with atomic(session):
            repair = _find_or_create_repair(session, quote, load_quote_items(session, quote.id))
        session.refresh(repair)
        return repair
    if quote.status == QuoteStatus.REFUSED:
        raise AlreadyRefused(f"Orçamento {quote.id} foi recusado e não pode mais ser aceito")
    if quote.status != QuoteStatus.FINALIZED:
        raise InvalidState(f"Orçamento {quote.id} ainda não foi finalizado pelo gerente")

    items = load_quote_items(session, quote.id)
    priced = [
        line for key in ("services", "packs", "adhoc_lines") for line in items[key]
        if (line.price or 0) > 0
    ]
    if not priced:
        raise EmptyQuote("O orçamento deve conter ao menos um item com preço")

    try:
        with atomic(session):
            quote.total = compute_total(**items)
            quote.status = QuoteStatus.ACCEPTED
            quote.responded_at = datetime.now()
            bump_version(session, quote)
            session.add(quote)
            repair = _find_or_create_repair(session, quote, items)
    except (Conflict, IntegrityError):
        # Aceitação concorrente: devolve a reparação vencedora, se houver
        session.expire_all()
        repair = _find_repair(session, quote_id)
        if repair is None:
            raise
        return repair

    session.refresh(repair)
    logger.info(f"Orçamento {quote.id} aceito pelo cliente {actor.user_id}; reparação {repair.id} criada")

    notify(
        session, NotificationType.QUOTE_ACCEPTED,
        f"O orçamento #{quote_id} foi aceito pelo cliente", f"/repairs/{repair.id}",
        recipient_role=Role.MANAGER, sender_id=actor.user_id, entity_id=repair.id,
    )
    for mechanic_id in [m.mechanic_id for m in items["mechanics"]]:
        notify(
            session, NotificationType.REPAIR_ASSIGNED,
            f"Você foi alocado na reparação #{repair.id}", f"/repairs/{repair.id}",
            recipient_id=mechanic_id, sender_id=actor.user_id, entity_id=repair.id,
        )
    return repair


def refuse_quote(session: Session, actor: Actor, quote_id: int) -> Quote:
    quote = get_or_404(session, Quote, quote_id, "Orçamento")
    require(actor, Action.QUOTE_RESPOND, Resource(owner_id=quote.client_id),
            "Você não está autorizado a recusar este orçamento")
    if quote.status in (QuoteStatus.ACCEPTED, QuoteStatus.REFUSED):
        raise ALREADY[quote.status](f"Orçamento {quote.id} não pode mais ser recusado")
    if quote.status != QuoteStatus.FINALIZED:
        raise InvalidState(f"Orçamento {quote.id} ainda não foi finalizado pelo gerente")

    with atomic(session):
        quote.status = QuoteStatus.REFUSED
        quote.responded_at = datetime.now()
        bump_version(session, quote)
        session.add(quote)
    session.refresh(quote)
    logger.info(f"Orçamento {quote.id} recusado pelo cliente {actor.user_id}")

    notify(
        session, NotificationType.QUOTE_REFUSED,
        f"O orçamento #{quote.id} foi recusado pelo cliente", f"/quotes/{quote.id}",
        recipient_role=Role.MANAGER, sender_id=actor.user_id, entity_id=quote.id,
    )
    return quote


# --- Chat do orçamento ---

def post_chat_message(session: Session, actor: Actor, quote_id: int, message: str) -> QuoteMessage:
    quote = get_or_404(session, Quote, quote_id, "Orçamento")
    require(actor, Action.QUOTE_CHAT, quote_resource(session, quote), "Acesso não autorizado a este chat")
    if not message or not message.strip():
        raise ValidationError("A mensagem não pode ser vazia")

    sender = get_or_404(session, User, actor.user_id, "Usuário")
    entry = QuoteMessage(
        quote_id=quote.id, sender_id=sender.id, sender_name=sender.full_name,
        sender_role=sender.role, message=message.strip(),
    )
    with atomic(session):
        session.add(entry)
    session.refresh(entry)

    if sender.role == Role.CLIENT:
        target = {"recipient_role": Role.MANAGER}
    else:
        target = {"recipient_id": quote.client_id}
    notify(
        session, NotificationType.NEW_CHAT_MESSAGE,
        f"Nova mensagem de {sender.full_name} no orçamento #{quote.id}", f"/quotes/{quote.id}/chat",
        sender_id=sender.id, entity_id=quote.id, **target,
    )
    return entry


def get_chat_messages(session: Session, actor: Actor, quote_id: int) -> List[QuoteMessage]:
    quote = get_or_404(session, Quote, quote_id, "Orçamento")
    require(actor, Action.QUOTE_CHAT, quote_resource(session, quote), "Acesso não autorizado a este chat")
    return session.exec(
        select(QuoteMessage).where(QuoteMessage.quote_id == quote.id)
        .order_by(QuoteMessage.sent_at, QuoteMessage.id)
    ).all()
