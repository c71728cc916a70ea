"""
Verificação de permissões por (ator, ação, recurso).
Substitui os testes de papel espalhados pelas rotas.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional

from garage.errors import Forbidden
from garage.models import Role


@dataclass(frozen=True)
class Actor:
    """Usuário autenticado (fornecido pela camada de autenticação)."""
    user_id: int
    role: Role


@dataclass(frozen=True)
class Resource:
    owner_id: Optional[int] = None
    mechanic_ids: FrozenSet[int] = field(default_factory=frozenset)


class Action(str, Enum):
    QUOTE_CREATE = "quote:create"
    QUOTE_VIEW = "quote:view"
    QUOTE_EDIT = "quote:edit"
    QUOTE_RESPOND = "quote:respond"
    QUOTE_CHAT = "quote:chat"
    TASK_TOGGLE = "task:toggle"
    REPAIR_VIEW = "repair:view"
    REPAIR_UPDATE = "repair:update"
    REPAIR_COMMENT = "repair:comment"
    INVOICE_MANAGE = "invoice:manage"
    INVOICE_VIEW = "invoice:view"
    CATALOG_MANAGE = "catalog:manage"
    STATS_VIEW = "stats:view"


def _is_owner(actor, resource):
    return resource is not None and resource.owner_id == actor.user_id


def _is_assigned(actor, resource):
    return resource is not None and actor.user_id in resource.mechanic_ids


def can(actor: Actor, action: Action, resource: Optional[Resource] = None) -> bool:
    role = actor.role
    manager = role == Role.MANAGER
    client_owner = role == Role.CLIENT and _is_owner(actor, resource)
    assigned = role == Role.MECHANIC and _is_assigned(actor, resource)

    if action == Action.QUOTE_CREATE:
        return manager or client_owner
    if action in (Action.QUOTE_VIEW, Action.QUOTE_CHAT, Action.REPAIR_VIEW):
        return manager or client_owner or assigned
    if action in (Action.QUOTE_EDIT, Action.INVOICE_MANAGE, Action.CATALOG_MANAGE, Action.STATS_VIEW):
        return manager
    if action == Action.QUOTE_RESPOND:
        return client_owner
    if action == Action.TASK_TOGGLE:
        return assigned
    if action == Action.REPAIR_UPDATE:
        return manager or assigned
    if action == Action.REPAIR_COMMENT:
        return assigned or client_owner
    if action == Action.INVOICE_VIEW:
        return manager or client_owner
    return False


def require(actor: Actor, action: Action, resource: Optional[Resource] = None, message: str = ""):
    if not can(actor, action, resource):
        raise Forbidden(message or f"Ação '{action.value}' não permitida para o usuário {actor.user_id}")
