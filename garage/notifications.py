"""
Notificações da oficina.
O envio é "dispare e esqueça": roda depois do commit da operação principal
e qualquer falha é apenas registrada no log.
"""
from typing import List, Optional

from sqlmodel import Session, or_, select

from garage.errors import Forbidden, NotFound, ValidationError
from garage.logger import logger
from garage.models import Notification, NotificationType, Role


def create_notification(
    session: Session,
    type: NotificationType,
    message: str,
    link: str,
    recipient_id: Optional[int] = None,
    recipient_role: Optional[Role] = None,
    sender_id: Optional[int] = None,
    entity_id: Optional[int] = None,
) -> Notification:
    if not message or not link:
        raise ValidationError("Notificação inválida: message e link são obrigatórios")
    if recipient_id is None and recipient_role is None:
        raise ValidationError("Notificação inválida: recipient_id ou recipient_role é obrigatório")

    notification = Notification(
        type=type, message=message, link=link,
        recipient_id=recipient_id, recipient_role=recipient_role,
        sender_id=sender_id, entity_id=entity_id,
    )
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification


def notify(session: Session, type: NotificationType, message: str, link: str, **kwargs) -> Optional[Notification]:
    """
    Dispara uma notificação depois que a transição principal já foi gravada.
    Uma falha aqui desfaz só a notificação.
    """
    try:
        notification = create_notification(session, type, message, link, **kwargs)
        logger.debug(f"Notificação {type.value} criada (id={notification.id})")
        return notification
    except Exception:
        session.rollback()
        logger.exception(f"Falha ao enviar notificação {type.value}: {message}")
        return None


def list_notifications(session: Session, user_id: int, role: Role, unread_only: bool = False) -> List[Notification]:
    query = select(Notification).where(
        or_(Notification.recipient_id == user_id, Notification.recipient_role == role)
    )
    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712
    return session.exec(query.order_by(Notification.created_at.desc(), Notification.id.desc())).all()


def mark_read(session: Session, notification_id: int, user_id: int, role: Role) -> Notification:
    notification = session.get(Notification, notification_id)
    if not notification:
        raise NotFound("Notificação não encontrada")
    if notification.recipient_id != user_id and notification.recipient_role != role:
        raise Forbidden("Notificação de outro usuário")
    notification.is_read = True
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification
