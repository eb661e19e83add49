import asyncio

import pytest
from sqlalchemy import update

from database import Database
from groups import GroupOnboarding
from invitations import InvitationManager
from ledger import PaymentOrderLedger
from models import OrderStatus, PaymentOrder
from payments_utils import Negotiation
from tools import PasaTandaTools, invite_text, is_valid_phone
from verification import VerificationStore
from whatsapp_utils import TextMessage

ADMIN, B, C = "59170000001", "59170000002", "59170000003"


@pytest.fixture
def tools(db, clock, messenger, payments, settlement):
    return PasaTandaTools(
        VerificationStore(db, clock=clock),
        InvitationManager(db, clock=clock),
        GroupOnboarding(db, settlement, clock=clock),
        PaymentOrderLedger(db, payments, settlement, clock=clock),
        messenger,
    )


def test_phone_validation():
    assert is_valid_phone("+59170000001")
    assert is_valid_phone("591 700-00001")
    assert not is_valid_phone("12345")
    assert not is_valid_phone("abc")
    assert not is_valid_phone(None)


def test_create_group_invites_participants(tools, messenger):
    result = asyncio.run(tools.create_group(
        ADMIN, "Tanda Amigos", participants=[B, "+591 7000 0003", ADMIN, B], amount_usd=20, frequency_days=15,
    ))

    assert result["status"] == "success"
    assert [i["invited_phone"] for i in result["invitations"]] == [B, C]
    [invite] = messenger.to(B, TextMessage)
    assert invite.body == invite_text("Tanda Amigos", result["invitations"][0]["invite_code"])


def test_create_group_rejects_bad_input(tools):
    assert asyncio.run(tools.create_group("123", "X"))["status"] == "invalid"
    assert asyncio.run(tools.create_group(ADMIN, "X", amount_usd=0))["status"] == "invalid"


def test_full_onboarding_flow(tools):
    created = asyncio.run(tools.create_group(ADMIN, "Tanda", participants=[B]))
    code = created["invitations"][0]["invite_code"]

    accepted = tools.respond_to_invitation(B, code, "ACCEPT", "Beto")
    assert accepted["status"] == "accepted"
    assert accepted["turn_number"] == 2
    assert "#2" in accepted["message"]

    assert tools.respond_to_invitation(B, code, "ACCEPT")["status"] == "already_accepted"

    started = asyncio.run(tools.start_tanda(created["group_id"]))
    assert started["status"] == "success"

    status = tools.check_group_status(created["group_id"])
    assert status["group"]["status"] == "ACTIVE"
    assert status["group"]["member_count"] == 2

    assert tools.configure_group(created["group_id"], amount_usd=99)["status"] == "locked"


def test_invitation_input_checks(tools):
    assert tools.respond_to_invitation(B, "", "ACCEPT")["status"] == "invalid"
    assert tools.respond_to_invitation(B, "ABCDEF12", "MAYBE")["status"] == "invalid"
    assert tools.respond_to_invitation(B, "ABCDEF12", "ACCEPT")["status"] == "not_found"


def test_configure_group_results(tools):
    created = asyncio.run(tools.create_group(ADMIN, "Tanda"))
    group_id = created["group_id"]

    assert tools.configure_group(group_id)["status"] == "no_changes"
    assert tools.configure_group(group_id, frequency_days=-1)["status"] == "invalid"
    assert tools.configure_group(group_id, frequency_days=30)["status"] == "success"
    assert tools.configure_group(4040, frequency_days=30)["status"] == "not_found"


def test_unknown_group_status(tools):
    assert tools.check_group_status(4040)["status"] == "not_found"
    assert asyncio.run(tools.start_tanda(4040))["status"] == "not_found"
    assert asyncio.run(tools.add_participant(4040, B))["status"] == "not_found"


def test_verify_phone_code(tools):
    issued = tools.verification.issue(ADMIN)

    assert tools.verify_phone_code(ADMIN, f"hola ~*{issued['code']}*~")["status"] == "verified"
    assert tools.verify_phone_code(ADMIN, issued["code"])["status"] == "not_verified"
    assert tools.verify_phone_code(ADMIN, "")["status"] == "not_verified"


def test_verify_payment_proof_messages(tools, make_group, db, clock):
    group_id = make_group([ADMIN, B])
    with db.session() as session:
        order = tools.ledger.add_pending(session, 2, group_id, "10", {"cycle_index": 0, "winner_phone": ADMIN}, now=clock())
        order_id = order.id
        session.commit()
    tools.ledger.claim(order_id, Negotiation(challenge="XDR"))

    missing = asyncio.run(tools.verify_payment_proof(order_id, {}))
    verified = asyncio.run(tools.verify_payment_proof(order_id, {"reference": "REF-1"}))

    assert missing["status"] == "invalid"
    assert verified["status"] == "verified"
    assert "verificado" in verified["message"]


def test_choose_payout(tools, make_group, db, clock):
    group_id = make_group([ADMIN, B])
    with db.session() as session:
        order = tools.ledger.add_pending(session, 2, group_id, "10", {"cycle_index": 0, "winner_phone": ADMIN}, now=clock())
        order_id = order.id
        session.commit()

    assert asyncio.run(tools.choose_payout(ADMIN, "later", group_id, 0))["status"] == "deferred"
    assert asyncio.run(tools.choose_payout(ADMIN, "fiat", group_id, 0))["status"] == "manual"
    assert asyncio.run(tools.choose_payout(ADMIN, "usdc", group_id, 0))["status"] == "pending_payments"

    with db.session() as session:
        session.exec(update(PaymentOrder).where(PaymentOrder.id == order_id).values(status=OrderStatus.COMPLETED))
        session.commit()

    paid = asyncio.run(tools.choose_payout(ADMIN, "usdc", group_id, 0))
    assert paid["status"] == "paid"
    assert "payout-tx-1" in paid["message"]


def test_tools_report_missing_database(clock, messenger, payments, settlement):
    db = Database(None)
    tools = PasaTandaTools(
        VerificationStore(db, clock=clock),
        InvitationManager(db, clock=clock),
        GroupOnboarding(db, settlement, clock=clock),
        PaymentOrderLedger(db, payments, settlement, clock=clock),
        messenger,
    )

    assert tools.respond_to_invitation(B, "ABCDEF12", "ACCEPT")["status"] == "error"
    assert tools.check_group_status(1)["status"] == "error"
    assert tools.configure_group(1, frequency_days=7)["status"] == "error"
    assert tools.verify_phone_code(ADMIN, "AB12CD")["status"] == "error"
    assert asyncio.run(tools.create_group(ADMIN, "Tanda"))["status"] == "error"
    assert asyncio.run(tools.add_participant(1, B))["status"] == "error"
    assert asyncio.run(tools.start_tanda(1))["status"] == "error"
    assert asyncio.run(tools.verify_payment_proof("order-1", {"reference": "REF-1"}))["status"] == "error"
    assert asyncio.run(tools.choose_payout(ADMIN, "usdc", 1, 0))["status"] == "error"
