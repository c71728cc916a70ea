"""
Ordens de reparação: status, etapas, comentários, fotos e notas internas.

Planned -> InProgress <-> AwaitingParts -> Completed -> Invoiced
qualquer estado antes de Completed -> Cancelled
Invoiced só é alcançado pela emissão da fatura.
"""
from datetime import datetime
from typing import Optional

from sqlmodel import Session, select

from garage.errors import InvalidState, NotFound, ValidationError
from garage.logger import logger
from garage.models import (
    NotificationType, RepairLine, RepairMechanic, RepairNote, RepairOrder,
    RepairPhoto, RepairStatus, RepairStep, StepComment, StepStatus,
)
from garage.notifications import notify
from garage.permissions import Action, Actor, Resource, require
from garage.repository import atomic, get_or_404, paginate, repair_mechanic_ids

TRANSITIONS = {
    RepairStatus.PLANNED: {RepairStatus.IN_PROGRESS, RepairStatus.CANCELLED},
    RepairStatus.IN_PROGRESS: {RepairStatus.AWAITING_PARTS, RepairStatus.COMPLETED, RepairStatus.CANCELLED},
    RepairStatus.AWAITING_PARTS: {RepairStatus.IN_PROGRESS, RepairStatus.CANCELLED},
    RepairStatus.COMPLETED: set(),
    RepairStatus.INVOICED: set(),
    RepairStatus.CANCELLED: set(),
}


def repair_resource(session: Session, repair: RepairOrder) -> Resource:
    return Resource(owner_id=repair.client_id, mechanic_ids=frozenset(repair_mechanic_ids(session, repair.id)))


def get_repair(session: Session, actor: Actor, repair_id: int) -> RepairOrder:
    repair = get_or_404(session, RepairOrder, repair_id, "Reparação")
    require(actor, Action.REPAIR_VIEW, repair_resource(session, repair), "Acesso não autorizado a esta reparação")
    return repair


def repair_lines(session: Session, repair_id: int):
    return session.exec(
        select(RepairLine).where(RepairLine.repair_id == repair_id).order_by(RepairLine.id)
    ).all()


def repair_detail(session: Session, repair: RepairOrder) -> dict:
    session.refresh(repair)
    steps = session.exec(
        select(RepairStep).where(RepairStep.repair_id == repair.id).order_by(RepairStep.id)
    ).all()
    return {
        **repair.model_dump(),
        "lines": [line.model_dump() for line in repair_lines(session, repair.id)],
        "mechanic_ids": repair_mechanic_ids(session, repair.id),
        "steps": [
            {
                **step.model_dump(),
                "comments": [c.model_dump() for c in session.exec(
                    select(StepComment).where(StepComment.step_id == step.id).order_by(StepComment.id)
                ).all()],
            }
            for step in steps
        ],
        "photos": [p.model_dump() for p in session.exec(
            select(RepairPhoto).where(RepairPhoto.repair_id == repair.id).order_by(RepairPhoto.id)
        ).all()],
        "notes": [n.model_dump() for n in session.exec(
            select(RepairNote).where(RepairNote.repair_id == repair.id).order_by(RepairNote.id)
        ).all()],
    }


def list_repairs(
    session: Session,
    status: Optional[RepairStatus] = None,
    client_id: Optional[int] = None,
    mechanic_id: Optional[int] = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    query = select(RepairOrder)
    if mechanic_id:
        query = query.join(RepairMechanic, RepairMechanic.repair_id == RepairOrder.id).where(
            RepairMechanic.mechanic_id == mechanic_id
        )
    if status:
        query = query.where(RepairOrder.status == status)
    if client_id:
        query = query.where(RepairOrder.client_id == client_id)
    return paginate(session, query.order_by(RepairOrder.created_at.desc(), RepairOrder.id.desc()), page, limit)


def update_repair_status(session: Session, actor: Actor, repair_id: int, status) -> RepairOrder:
    repair = get_or_404(session, RepairOrder, repair_id, "Reparação")
    require(actor, Action.REPAIR_UPDATE, repair_resource(session, repair), "Acesso não autorizado a esta reparação")
    try:
        status = RepairStatus(status)
    except ValueError:
        raise ValidationError(f"Status de reparação inválido: {status!r}")

    if status not in TRANSITIONS[repair.status]:
        raise InvalidState(f"Transição {repair.status.value} -> {status.value} não permitida")

    previous = repair.status
    with atomic(session):
        repair.status = status
        if status == RepairStatus.IN_PROGRESS and repair.actual_start is None:
            repair.actual_start = datetime.now()
        if status == RepairStatus.COMPLETED:
            repair.actual_end = datetime.now()
            if repair.final_cost is None:
                repair.final_cost = repair.estimated_cost
        session.add(repair)
    session.refresh(repair)
    logger.info(f"Reparação {repair.id}: {previous.value} -> {status.value} (usuário {actor.user_id})")

    notify(
        session, NotificationType.REPAIR_STATUS_UPDATE,
        f"Sua reparação #{repair.id} mudou para {status.value}", f"/repairs/{repair.id}",
        recipient_id=repair.client_id, sender_id=actor.user_id, entity_id=repair.id,
    )
    return repair


def _get_step(session: Session, repair: RepairOrder, step_id: int) -> RepairStep:
    step = session.get(RepairStep, step_id)
    if not step or step.repair_id != repair.id:
        raise NotFound("Etapa não encontrada nesta reparação")
    return step


def add_step(session: Session, actor: Actor, repair_id: int, title: str, description: Optional[str] = None) -> RepairStep:
    repair = get_or_404(session, RepairOrder, repair_id, "Reparação")
    require(actor, Action.REPAIR_UPDATE, repair_resource(session, repair))
    if not title or not title.strip():
        raise ValidationError("O título da etapa é obrigatório")

    step = RepairStep(repair_id=repair.id, title=title.strip(), description=description)
    with atomic(session):
        session.add(step)
    session.refresh(step)
    return step


def update_step_status(session: Session, actor: Actor, repair_id: int, step_id: int, status,
                       finished_at: Optional[datetime] = None) -> RepairStep:
    repair = get_or_404(session, RepairOrder, repair_id, "Reparação")
    require(actor, Action.REPAIR_UPDATE, repair_resource(session, repair), "Acesso não autorizado a modificar esta etapa")
    try:
        status = StepStatus(status)
    except ValueError:
        valid = ", ".join(s.value for s in StepStatus)
        raise ValidationError(f"Status '{status}' inválido. Status válidos: {valid}")
    step = _get_step(session, repair, step_id)

    with atomic(session):
        step.status = status
        if status == StepStatus.DONE:
            step.finished_at = finished_at or datetime.now()
        elif status == StepStatus.IN_PROGRESS:
            step.started_at = step.started_at or datetime.now()
            step.finished_at = None
        elif status == StepStatus.PENDING:
            step.finished_at = None
        session.add(step)
    session.refresh(step)
    return step


def add_step_comment(session: Session, actor: Actor, repair_id: int, step_id: int, message: str) -> StepComment:
    repair = get_or_404(session, RepairOrder, repair_id, "Reparação")
    require(actor, Action.REPAIR_COMMENT, repair_resource(session, repair), "Acesso não autorizado a comentar esta etapa")
    if not message or not message.strip():
        raise ValidationError("O comentário não pode ser vazio")
    step = _get_step(session, repair, step_id)

    comment = StepComment(step_id=step.id, author_id=actor.user_id, message=message.strip())
    with atomic(session):
        session.add(comment)
    session.refresh(comment)
    return comment


def add_photo(session: Session, actor: Actor, repair_id: int, url: str, description: str,
              step_id: Optional[int] = None) -> RepairPhoto:
    """Registra uma foto já armazenada externamente (apenas a URL)."""
    repair = get_or_404(session, RepairOrder, repair_id, "Reparação")
    require(actor, Action.REPAIR_UPDATE, repair_resource(session, repair), "Acesso não autorizado a esta reparação")
    if not url:
        raise ValidationError("A URL da foto é obrigatória")
    if not description:
        raise ValidationError("A descrição da foto é obrigatória")
    if step_id is not None:
        _get_step(session, repair, step_id)

    photo = RepairPhoto(repair_id=repair.id, url=url, description=description, added_by=actor.user_id, step_id=step_id)
    with atomic(session):
        session.add(photo)
    session.refresh(photo)
    return photo


def add_internal_note(session: Session, actor: Actor, repair_id: int, message: str) -> RepairNote:
    repair = get_or_404(session, RepairOrder, repair_id, "Reparação")
    require(actor, Action.REPAIR_UPDATE, repair_resource(session, repair))
    if not message or not message.strip():
        raise ValidationError("A nota não pode ser vazia")

    note = RepairNote(repair_id=repair.id, author_id=actor.user_id, message=message.strip())
    with atomic(session):
        session.add(note)
    session.refresh(note)
    return note
