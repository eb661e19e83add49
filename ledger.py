import logging
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from database import Database
from models import CyclePayout, Group, OrderStatus, PaymentOrder, User, normalize_phone, utcnow
from groups import wallet_ref
from soroban_utils import SettlementError

logger = logging.getLogger(__name__)

TANDA_QUOTA = "TANDA_QUOTA"

# Forward-only status graph. COMPLETED is fired by the settlement webhook.
TRANSITIONS = {
    OrderStatus.DRAFT: {OrderStatus.PENDING},
    OrderStatus.PENDING: {OrderStatus.CLAIMED_BY_USER},
    OrderStatus.CLAIMED_BY_USER: {OrderStatus.VERIFIED, OrderStatus.REJECTED, OrderStatus.COMPLETED},
    OrderStatus.VERIFIED: {OrderStatus.COMPLETED},
    OrderStatus.REJECTED: set(),
    OrderStatus.COMPLETED: set(),
}

SETTLED = {OrderStatus.VERIFIED, OrderStatus.COMPLETED}


class InvalidTransition(ValueError):
    """The order is not in a state that allows the requested move."""


def predecessors(status: str) -> set:
    return {src for src, targets in TRANSITIONS.items() if status in targets}


def cycle_index_of(metadata: Optional[dict]) -> Optional[int]:
    if not metadata or metadata.get("cycle_index") is None:
        return None
    try:
        return int(metadata["cycle_index"])
    except (TypeError, ValueError):
        return None


class PaymentOrderLedger:
    """
    State record of every payment order: DRAFT -> PENDING -> CLAIMED_BY_USER ->
    VERIFIED | REJECTED, and -> COMPLETED once settlement confirms.

    Every move is a conditional UPDATE on the expected previous status, so two
    webhooks racing on the same order cannot both win.
    """

    def __init__(self, db: Database, payments, settlement=None, clock: Callable = utcnow):
        self.db = db
        self.payments = payments
        self.settlement = settlement
        self.clock = clock

    def get(self, order_id: str) -> Optional[PaymentOrder]:
        with self.db.session() as session:
            return session.get(PaymentOrder, order_id)

    def add_pending(self, session, user_id: int, group_id: int, amount_usd, metadata: dict, now=None) -> PaymentOrder:
        """
        Stages a PENDING quota order in the caller's transaction.
        """
        now = now or self.clock()
        order = PaymentOrder(
            user_id=user_id,
            group_id=group_id,
            amount_crypto_usdc=Decimal(str(amount_usd)),
            payment_method="QR_SIMPLE",
            status=OrderStatus.PENDING,
            proof_metadata=dict(metadata),
            created_at=now,
            updated_at=now,
        )
        session.add(order)
        return order

    def _move(self, session, order_id: str, status: str, **values) -> bool:
        result = session.exec(
            update(PaymentOrder)
            .where(PaymentOrder.id == order_id, PaymentOrder.status.in_(sorted(predecessors(status))))
            .values(status=status, updated_at=self.clock(), **values)
        )
        return result.rowcount == 1

    def claim(self, order_id: str, negotiation) -> None:
        """
        PENDING -> CLAIMED_BY_USER with the negotiated challenge and QR payload.
        """
        with self.db.session() as session:
            if not self._move(
                session,
                order_id,
                OrderStatus.CLAIMED_BY_USER,
                xdr_challenge=negotiation.challenge,
                qr_payload_url=negotiation.qr,
            ):
                session.rollback()
                raise InvalidTransition(f"Order {order_id} cannot be claimed")
            session.commit()

    async def verify_fiat_proof(self, order_id: str, proof_metadata: Optional[dict]) -> dict:
        if not order_id:
            return {"status": "invalid", "reason": "order id is required"}
        reference = (proof_metadata or {}).get("reference")
        if not isinstance(reference, str) or not reference.strip():
            return {"status": "invalid", "reason": "proof is missing the transaction reference"}

        order = self.get(order_id)
        if order is None:
            return {"status": "not_found"}
        if order.status not in predecessors(OrderStatus.VERIFIED):
            return {"status": "conflict", "order_status": order.status}

        metadata = dict(order.proof_metadata or {})
        result = await self.payments.verify_fiat(
            order_id=order_id,
            amount_usd=order.amount_crypto_usdc,
            proof_metadata=proof_metadata,
            job_id=metadata.get("x402_job_id"),
        )

        # The proof is kept whatever the outcome; cycle fields stay untouched.
        metadata["proof"] = dict(proof_metadata)
        metadata["verification"] = {"success": result.success, "reason": result.reason}
        new_status = OrderStatus.VERIFIED if result.success else OrderStatus.REJECTED

        with self.db.session() as session:
            moved = self._move(session, order_id, new_status, proof_metadata=metadata, tx_hash=result.tx_hash)
            session.commit()
        if not moved:
            return {"status": "conflict"}

        logger.info("Order %s %s after fiat proof %s", order_id, new_status, reference)
        if result.success:
            return {"status": "verified", "tx_hash": result.tx_hash}
        return {"status": "rejected", "reason": result.reason}

    async def forward_crypto(self, order_id: str, x_payment: Optional[str]) -> dict:
        if not x_payment:
            return {"status": "invalid", "reason": "X-PAYMENT payload is required"}

        order = self.get(order_id)
        if order is None:
            return {"status": "not_found"}
        if order.status not in predecessors(OrderStatus.VERIFIED):
            return {"status": "conflict", "order_status": order.status}

        result = await self.payments.forward_crypto(order_id=order_id, amount_usd=order.amount_crypto_usdc, x_payment=x_payment)
        new_status = OrderStatus.VERIFIED if result.success else OrderStatus.REJECTED

        with self.db.session() as session:
            moved = self._move(session, order_id, new_status, tx_hash=result.tx_hash)
            session.commit()
        if not moved:
            return {"status": "conflict"}

        return {"status": "verified" if result.success else "rejected", "tx_hash": result.tx_hash, "reason": result.reason}

    def complete(self, order_id: str, tx_hash: Optional[str] = None) -> dict:
        """
        Settlement webhook mutation point. Repeated deliveries are harmless.
        """
        values = {"tx_hash": tx_hash} if tx_hash else {}
        with self.db.session() as session:
            moved = self._move(session, order_id, OrderStatus.COMPLETED, **values)
            session.commit()
            order = session.get(PaymentOrder, order_id, populate_existing=True)

        if order is None:
            return {"status": "not_found"}
        if moved:
            return {"status": "completed", "order": order}
        if order.status == OrderStatus.COMPLETED:
            return {"status": "already_completed", "order": order}
        return {"status": "conflict", "order": order}

    def cycle_orders(self, group_id: int, cycle_index: int) -> list:
        with self.db.session() as session:
            orders = session.exec(select(PaymentOrder).where(PaymentOrder.group_id == group_id)).all()
        return [o for o in orders if cycle_index_of(o.proof_metadata) == cycle_index]

    async def payout_cycle(self, group_id: int, cycle_index: int, requester_phone: str) -> dict:
        """
        Releases the pot to the cycle's winner once every quota of the cycle has settled.

        The cycle is claimed (a `cycle_payouts` row) before settlement is called,
        so two taps on the payout button send the money once.
        """
        orders = self.cycle_orders(group_id, cycle_index)
        if not orders:
            return {"status": "not_found"}

        winner_phone = normalize_phone(orders[0].proof_metadata.get("winner_phone"))
        if normalize_phone(requester_phone) != winner_phone:
            return {"status": "not_winner"}

        if any((o.proof_metadata or {}).get("payout_tx_hash") for o in orders):
            return {"status": "already_paid"}

        outstanding = [o for o in orders if o.status not in SETTLED]
        if outstanding:
            return {"status": "pending_payments", "outstanding": len(outstanding)}

        with self.db.session() as session:
            group = session.get(Group, group_id)
            winner = session.exec(select(User).where(User.phone_number == winner_phone)).first()
        if group is None or not group.contract_address or winner is None:
            return {"status": "not_found"}
        if self.settlement is None:
            raise SettlementError("No settlement client configured")

        payout_id = self._claim_payout(group_id, cycle_index, winner_phone)
        if payout_id is None:
            logger.info("Payout for group=%s cycle=%s already claimed", group_id, cycle_index)
            return {"status": "already_paid"}

        try:
            tx_hash = await self.settlement.payout(group.contract_address, wallet_ref(winner))
        except SettlementError:
            self._release_payout(payout_id)
            raise

        try:
            with self.db.session() as session:
                session.exec(update(CyclePayout).where(CyclePayout.id == payout_id).values(tx_hash=tx_hash or "submitted"))
                for order in orders:
                    metadata = dict(order.proof_metadata or {})
                    metadata["payout_tx_hash"] = tx_hash or "submitted"
                    session.exec(update(PaymentOrder).where(PaymentOrder.id == order.id).values(proof_metadata=metadata))
                session.commit()
        except SQLAlchemyError:
            # The transfer already went out; the claim row still blocks a repeat.
            logger.exception("Payout %s sent for group %s cycle %s but not recorded", tx_hash, group_id, cycle_index)

        logger.info("Payout group=%s cycle=%s tx=%s", group_id, cycle_index, tx_hash)
        return {"status": "paid", "tx_hash": tx_hash}

    def _claim_payout(self, group_id: int, cycle_index: int, winner_phone: str) -> Optional[int]:
        stmt = (
            self.db.insert(CyclePayout)
            .values(group_id=group_id, cycle_index=cycle_index, winner_phone=winner_phone, created_at=self.clock())
            .on_conflict_do_nothing(index_elements=["group_id", "cycle_index"])
            .returning(CyclePayout.__table__.c.id)
        )
        with self.db.session() as session:
            claimed = session.exec(stmt).first()
            session.commit()
        return claimed[0] if claimed else None

    def _release_payout(self, payout_id: int):
        # Settlement refused the transfer, so the cycle may be retried.
        with self.db.session() as session:
            session.exec(delete(CyclePayout).where(CyclePayout.id == payout_id, CyclePayout.tx_hash.is_(None)))
            session.commit()
