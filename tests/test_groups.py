import asyncio
from decimal import Decimal

import pytest

from groups import GroupActivationError, GroupOnboarding
from invitations import ACCEPT, InvitationManager
from models import GroupStatus

ADMIN, B = "59170000001", "59170000002"


@pytest.fixture
def onboarding(db, settlement, clock):
    return GroupOnboarding(db, settlement, clock=clock)


def test_draft_group_has_creator_as_admin(onboarding):
    group = onboarding.create_draft_group("+591 70000001", "Tanda Barrio", "15.50", 14, yield_enabled=False)

    assert group.status == GroupStatus.DRAFT
    assert group.contract_address is None
    assert group.total_cycle_amount_usdc == Decimal("15.50")
    assert group.group_whatsapp_id == f"group-{group.id}@g.us"
    [admin] = onboarding.members(group.id)
    assert admin["phone"] == ADMIN
    assert admin["is_admin"] is True
    assert admin["turn_number"] == 1


def test_configure_draft_group(onboarding):
    group = onboarding.create_draft_group(ADMIN, "Tanda", "10", 7)

    updated = onboarding.configure_group(group.id, amount_usd=25, frequency_days=30)

    assert updated.total_cycle_amount_usdc == Decimal("25")
    assert updated.frequency_days == 30
    assert updated.yield_enabled is True
    assert onboarding.configure_group(999, amount_usd=5) is None


def test_activation_deploys_contract_once(onboarding, db, clock, settlement):
    group = onboarding.create_draft_group(ADMIN, "Tanda", "10", 7)
    manager = InvitationManager(db, clock=clock)
    manager.respond(B, manager.create_invite(group.id, ADMIN, B), ACCEPT)

    active = asyncio.run(onboarding.activate(group.id))
    again = asyncio.run(onboarding.activate(group.id))

    assert active.status == GroupStatus.ACTIVE
    assert active.contract_address == "CCONTRACTADDRESS"
    assert again.contract_address == "CCONTRACTADDRESS"
    assert len(settlement.created) == 1
    call = settlement.created[0]
    assert call["admin"] == ADMIN
    assert call["members"] == [ADMIN, B]
    assert call["amount_stroops"] == "100000000"
    assert call["frequency_days"] == 7


def test_active_group_terms_are_locked(onboarding):
    group = onboarding.create_draft_group(ADMIN, "Tanda", "10", 7)
    asyncio.run(onboarding.activate(group.id))

    with pytest.raises(GroupActivationError):
        onboarding.configure_group(group.id, amount_usd=50)


def test_activation_without_address_stays_draft(onboarding, settlement):
    settlement.address = None
    group = onboarding.create_draft_group(ADMIN, "Tanda", "10", 7)

    with pytest.raises(GroupActivationError):
        asyncio.run(onboarding.activate(group.id))
    assert onboarding.get_group(group.id).status == GroupStatus.DRAFT


def test_activation_needs_positive_terms(onboarding, settlement):
    group = onboarding.create_draft_group(ADMIN, "Tanda", "0", 7)

    with pytest.raises(GroupActivationError):
        asyncio.run(onboarding.activate(group.id))
    assert settlement.created == []


def test_activate_unknown_group(onboarding):
    assert asyncio.run(onboarding.activate(404)) is None
