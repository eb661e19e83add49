import asyncio

import pytest
from sqlalchemy import update
from sqlmodel import select

from ledger import InvalidTransition, PaymentOrderLedger, predecessors
from models import CyclePayout, Group, OrderStatus, PaymentOrder
from payments_utils import Negotiation
from soroban_utils import SettlementError

A, B, C = "59170000001", "59170000002", "59170000003"


@pytest.fixture
def ledger(db, payments, settlement, clock):
    return PaymentOrderLedger(db, payments, settlement, clock=clock)


@pytest.fixture
def cycle(db, ledger, make_group, clock):
    """
    Cycle 0 of a three member group: A wins, B and C owe a quota.
    Returns (group_id, {payer_phone: order_id}).
    """
    group_id = make_group([A, B, C])
    orders = {}
    with db.session() as session:
        for user_id, phone in ((2, B), (3, C)):
            order = ledger.add_pending(session, user_id, group_id, "10", {
                "kind": "TANDA_QUOTA",
                "cycle_index": 0,
                "group_id": group_id,
                "payer_phone": phone,
                "winner_phone": A,
            }, now=clock())
            orders[phone] = order.id
        session.commit()
    return group_id, orders


def set_status(db, order_id, status):
    with db.session() as session:
        session.exec(update(PaymentOrder).where(PaymentOrder.id == order_id).values(status=status))
        session.commit()


def test_transitions_only_move_forward():
    assert predecessors(OrderStatus.CLAIMED_BY_USER) == {OrderStatus.PENDING}
    assert predecessors(OrderStatus.COMPLETED) == {OrderStatus.CLAIMED_BY_USER, OrderStatus.VERIFIED}
    assert predecessors(OrderStatus.PENDING) == {OrderStatus.DRAFT}
    assert predecessors(OrderStatus.DRAFT) == set()


def test_claim_stores_negotiation(ledger, cycle):
    _, orders = cycle
    ledger.claim(orders[B], Negotiation(job_id="job-1", challenge="XDR", qr="https://qr"))

    order = ledger.get(orders[B])
    assert order.status == OrderStatus.CLAIMED_BY_USER
    assert order.xdr_challenge == "XDR"
    assert order.qr_payload_url == "https://qr"


def test_claim_twice_is_rejected(ledger, cycle):
    _, orders = cycle
    ledger.claim(orders[B], Negotiation(challenge="XDR"))

    with pytest.raises(InvalidTransition):
        ledger.claim(orders[B], Negotiation(challenge="OTHER"))
    assert ledger.get(orders[B]).xdr_challenge == "XDR"


def test_proof_without_reference_is_invalid(ledger, cycle, payments):
    _, orders = cycle
    result = asyncio.run(ledger.verify_fiat_proof(orders[B], {"amount": "10"}))

    assert result["status"] == "invalid"
    assert payments.fiat_checks == []


def test_proof_for_unknown_order(ledger):
    result = asyncio.run(ledger.verify_fiat_proof("missing", {"reference": "REF-1"}))
    assert result["status"] == "not_found"


def test_proof_before_claim_is_a_conflict(ledger, cycle):
    _, orders = cycle
    result = asyncio.run(ledger.verify_fiat_proof(orders[B], {"reference": "REF-1"}))
    assert result == {"status": "conflict", "order_status": OrderStatus.PENDING}


def test_verified_proof_merges_metadata(ledger, cycle):
    _, orders = cycle
    ledger.claim(orders[B], Negotiation(challenge="XDR"))

    result = asyncio.run(ledger.verify_fiat_proof(orders[B], {"reference": "REF-77", "bank": "BNB"}))

    assert result == {"status": "verified", "tx_hash": "fiat-tx-1"}
    order = ledger.get(orders[B])
    assert order.status == OrderStatus.VERIFIED
    assert order.tx_hash == "fiat-tx-1"
    assert order.proof_metadata["cycle_index"] == 0
    assert order.proof_metadata["payer_phone"] == B
    assert order.proof_metadata["proof"] == {"reference": "REF-77", "bank": "BNB"}
    assert order.proof_metadata["verification"]["success"] is True


def test_rejected_proof(ledger, cycle, payments):
    _, orders = cycle
    payments.verify_success = False
    ledger.claim(orders[B], Negotiation(challenge="XDR"))

    result = asyncio.run(ledger.verify_fiat_proof(orders[B], {"reference": "REF-1"}))

    assert result == {"status": "rejected", "reason": "amount mismatch"}
    assert ledger.get(orders[B]).status == OrderStatus.REJECTED


def test_crypto_payment_requires_payload(ledger, cycle):
    _, orders = cycle
    assert asyncio.run(ledger.forward_crypto(orders[B], None))["status"] == "invalid"


def test_crypto_payment_verifies_order(ledger, cycle, payments):
    _, orders = cycle
    ledger.claim(orders[B], Negotiation(challenge="XDR"))

    result = asyncio.run(ledger.forward_crypto(orders[B], "eyJzaWduZWQiOiJ4ZHIifQ=="))

    assert result["status"] == "verified"
    assert payments.crypto_checks[0]["x_payment"] == "eyJzaWduZWQiOiJ4ZHIifQ=="
    assert ledger.get(orders[B]).status == OrderStatus.VERIFIED


def test_complete_is_idempotent(ledger, cycle):
    _, orders = cycle
    set_status(ledger.db, orders[B], OrderStatus.VERIFIED)

    first = ledger.complete(orders[B], "settle-tx")
    second = ledger.complete(orders[B], "settle-tx")

    assert first["status"] == "completed"
    assert second["status"] == "already_completed"
    assert ledger.get(orders[B]).tx_hash == "settle-tx"


def test_complete_unknown_and_out_of_order(ledger, cycle):
    _, orders = cycle
    assert ledger.complete("missing")["status"] == "not_found"
    assert ledger.complete(orders[B])["status"] == "conflict"
    assert ledger.get(orders[B]).status == OrderStatus.PENDING


def test_cycle_orders_filters_by_cycle(ledger, cycle):
    group_id, orders = cycle
    assert {o.id for o in ledger.cycle_orders(group_id, 0)} == set(orders.values())
    assert ledger.cycle_orders(group_id, 1) == []


def test_payout_only_for_the_winner(ledger, cycle):
    group_id, _ = cycle
    result = asyncio.run(ledger.payout_cycle(group_id, 0, B))
    assert result["status"] == "not_winner"


def test_payout_waits_for_every_quota(ledger, cycle, settlement):
    group_id, orders = cycle
    set_status(ledger.db, orders[B], OrderStatus.VERIFIED)

    result = asyncio.run(ledger.payout_cycle(group_id, 0, A))

    assert result == {"status": "pending_payments", "outstanding": 1}
    assert settlement.payouts == []


def test_payout_releases_pot_once(ledger, cycle, settlement):
    group_id, orders = cycle
    set_status(ledger.db, orders[B], OrderStatus.VERIFIED)
    set_status(ledger.db, orders[C], OrderStatus.COMPLETED)

    result = asyncio.run(ledger.payout_cycle(group_id, 0, "+591 7000 0001"))
    again = asyncio.run(ledger.payout_cycle(group_id, 0, A))

    assert result == {"status": "paid", "tx_hash": "payout-tx-1"}
    assert again["status"] == "already_paid"
    # A has no self-custody key, so the managed wallet is addressed by phone.
    assert settlement.payouts == [("CGROUPCONTRACT", A)]
    assert ledger.get(orders[B]).proof_metadata["payout_tx_hash"] == "payout-tx-1"


def test_payout_needs_a_contract(ledger, cycle, settlement):
    group_id, orders = cycle
    set_status(ledger.db, orders[B], OrderStatus.VERIFIED)
    set_status(ledger.db, orders[C], OrderStatus.VERIFIED)
    with ledger.db.session() as session:
        session.exec(update(Group).where(Group.id == group_id).values(contract_address=None))
        session.commit()

    assert asyncio.run(ledger.payout_cycle(group_id, 0, A))["status"] == "not_found"
    assert settlement.payouts == []


class SlowSettlement:
    def __init__(self, fail=False):
        self.payouts = []
        self.fail = fail

    async def payout(self, group_address, winner_address):
        await asyncio.sleep(0.01)
        if self.fail:
            raise SettlementError("network down")
        self.payouts.append((group_address, winner_address))
        return f"payout-tx-{len(self.payouts)}"


def test_concurrent_payout_requests_pay_once(db, payments, clock, cycle):
    group_id, orders = cycle
    set_status(db, orders[B], OrderStatus.VERIFIED)
    set_status(db, orders[C], OrderStatus.VERIFIED)
    settlement = SlowSettlement()
    ledger = PaymentOrderLedger(db, payments, settlement, clock=clock)

    async def both():
        return await asyncio.gather(ledger.payout_cycle(group_id, 0, A), ledger.payout_cycle(group_id, 0, A))

    results = asyncio.run(both())

    assert sorted(r["status"] for r in results) == ["already_paid", "paid"]
    assert settlement.payouts == [("CGROUPCONTRACT", A)]
    with db.session() as session:
        [payout] = session.exec(select(CyclePayout)).all()
    assert payout.tx_hash == "payout-tx-1"


def test_refused_payout_can_be_retried(db, payments, clock, cycle):
    group_id, orders = cycle
    set_status(db, orders[B], OrderStatus.VERIFIED)
    set_status(db, orders[C], OrderStatus.VERIFIED)
    settlement = SlowSettlement(fail=True)
    ledger = PaymentOrderLedger(db, payments, settlement, clock=clock)

    with pytest.raises(SettlementError):
        asyncio.run(ledger.payout_cycle(group_id, 0, A))

    settlement.fail = False
    assert asyncio.run(ledger.payout_cycle(group_id, 0, A))["status"] == "paid"
    assert len(settlement.payouts) == 1
