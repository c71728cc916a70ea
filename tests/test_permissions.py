import pytest

from garage.errors import Forbidden
from garage.models import Role
from garage.permissions import Action, Actor, Resource, can, require

MANAGER = Actor(user_id=1, role=Role.MANAGER)
OWNER = Actor(user_id=2, role=Role.CLIENT)
STRANGER = Actor(user_id=3, role=Role.CLIENT)
ASSIGNED = Actor(user_id=4, role=Role.MECHANIC)
UNASSIGNED = Actor(user_id=5, role=Role.MECHANIC)

QUOTE = Resource(owner_id=2, mechanic_ids=frozenset({4}))


@pytest.mark.parametrize("action, allowed", [
    (Action.QUOTE_VIEW, {MANAGER, OWNER, ASSIGNED}),
    (Action.QUOTE_CHAT, {MANAGER, OWNER, ASSIGNED}),
    (Action.QUOTE_EDIT, {MANAGER}),
    (Action.QUOTE_RESPOND, {OWNER}),
    (Action.TASK_TOGGLE, {ASSIGNED}),
    (Action.REPAIR_UPDATE, {MANAGER, ASSIGNED}),
    (Action.REPAIR_COMMENT, {OWNER, ASSIGNED}),
    (Action.INVOICE_VIEW, {MANAGER, OWNER}),
    (Action.INVOICE_MANAGE, {MANAGER}),
])
def test_rules(action, allowed):
    for actor in (MANAGER, OWNER, STRANGER, ASSIGNED, UNASSIGNED):
        assert can(actor, action, QUOTE) == (actor in allowed), (actor, action)


def test_client_creates_only_for_self():
    assert can(OWNER, Action.QUOTE_CREATE, Resource(owner_id=OWNER.user_id))
    assert not can(OWNER, Action.QUOTE_CREATE, Resource(owner_id=STRANGER.user_id))
    assert can(MANAGER, Action.QUOTE_CREATE, Resource(owner_id=OWNER.user_id))
    assert not can(ASSIGNED, Action.QUOTE_CREATE, Resource(owner_id=OWNER.user_id))


def test_missing_resource_denies_ownership_rules():
    assert not can(OWNER, Action.QUOTE_VIEW)
    assert can(MANAGER, Action.STATS_VIEW)


def test_require_raises_forbidden():
    require(MANAGER, Action.CATALOG_MANAGE)
    with pytest.raises(Forbidden, match="Sem acesso"):
        require(OWNER, Action.CATALOG_MANAGE, message="Sem acesso")
