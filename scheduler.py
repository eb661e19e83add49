import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

import config
from database import Database
from ledger import TANDA_QUOTA, InvalidTransition, PaymentOrderLedger, cycle_index_of
from models import Group, GroupStatus, Membership, OrderStatus, PaymentOrder, User, as_utc, normalize_phone, utcnow
from payments_utils import PaymentBackendError
from whatsapp_utils import (
    Button, ButtonsMessage, ImageMessage, MessagingError, PaymentRequestMessage, StickerMessage
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
HTTP_LINK_RE = re.compile(r"^https?://", re.IGNORECASE)
SPANISH_MONTHS = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]

# A PENDING order younger than this may still be in another worker's hands.
STRANDED_ORDER_GRACE = timedelta(minutes=10)


@dataclass
class CycleState:
    last_index: Optional[int] = None
    last_created_at: Optional[datetime] = None

    @property
    def next_index(self) -> int:
        return 0 if self.last_index is None else self.last_index + 1


@dataclass
class Member:
    user_id: int
    phone: str
    turn_number: int


@dataclass
class PayerOrder:
    order_id: str
    phone: str


@dataclass
class CyclePlan:
    group_id: int
    group_name: str
    contract_address: str
    amount_usd: object
    cycle_index: int
    winner_turn: int
    winner: Member
    payers: List[PayerOrder] = field(default_factory=list)


def is_cycle_due(last_created_at: Optional[datetime], frequency_days: int, now: datetime, has_cycle: bool = True) -> bool:
    """
    Due when no cycle exists yet, when the last cycle's timestamp is unknown, or
    when at least `frequency_days` whole days have elapsed since it was created.
    """
    if not has_cycle or last_created_at is None:
        return True
    elapsed_ms = (as_utc(now) - as_utc(last_created_at)) / timedelta(milliseconds=1)
    return elapsed_ms >= frequency_days * DAY_MS


def winner_turn(cycle_index: int, member_count: int) -> int:
    # Fixed round robin: cycle 0 -> turn 1, wrapping after the last member.
    return (cycle_index % member_count) + 1


def resolve_winner(members: List[Member], cycle_index: int) -> Member:
    """
    Members must be sorted by turn number. An exact turn match wins; if turns
    have a gap (a re-invited member was renumbered) the member at the same
    position in turn order is used instead. It does not fall back to the
    first member, which would hand that member every gapped cycle.
    """
    turn = winner_turn(cycle_index, len(members))
    for member in members:
        if member.turn_number == turn:
            return member
    logger.warning(
        "No member holds turn %s (turns=%s); using position %s in turn order",
        turn, [m.turn_number for m in members], turn - 1,
    )
    return members[turn - 1]


def load_cycle_state(session, group_id: int) -> CycleState:
    """
    The last cycle is the highest `cycle_index` found in the group's order
    metadata; its timestamp is the latest `created_at` among those orders.
    """
    rows = session.exec(
        select(PaymentOrder.proof_metadata, PaymentOrder.created_at).where(PaymentOrder.group_id == group_id)
    ).all()

    state = CycleState()
    for metadata, created_at in rows:
        index = cycle_index_of(metadata)
        if index is None:
            continue
        if state.last_index is None or index > state.last_index:
            state.last_index = index
            state.last_created_at = created_at
        elif index == state.last_index and created_at and (state.last_created_at is None or created_at > state.last_created_at):
            state.last_created_at = created_at
    return state


def month_name(now: datetime) -> str:
    return SPANISH_MONTHS[now.month - 1]


class PaymentCycleScheduler:
    """
    Periodic rotation engine. Each tick starts every due cycle: one winner per
    group is notified and every other member gets a payment request.
    """

    def __init__(
        self,
        db: Database,
        ledger: PaymentOrderLedger,
        payments,
        messenger,
        clock: Callable = utcnow,
        enabled: Callable[[], bool] = config.scheduler_enabled,
    ):
        self.db = db
        self.ledger = ledger
        self.payments = payments
        self.messenger = messenger
        self.clock = clock
        self.enabled = enabled
        self._tick_lock = asyncio.Lock()

    async def run_forever(self):
        while True:
            await self.tick()
            await asyncio.sleep(config.scheduler_interval_seconds())

    async def tick(self):
        if not self.enabled():
            return
        if not self.db.is_available():
            logger.warning("Database unavailable; payment cycle tick skipped")
            return
        if self._tick_lock.locked():
            logger.warning("Previous payment cycle tick still running; skipping")
            return

        async with self._tick_lock:
            try:
                groups = self.eligible_groups()
            except SQLAlchemyError as e:
                logger.error("Payment cycle tick failed loading groups: %s", e)
                return

            for group in groups:
                try:
                    await self.process_group(group)
                except Exception:
                    logger.exception("Payment cycle failed for group %s", group.id)

    def eligible_groups(self) -> List[Group]:
        with self.db.session() as session:
            return list(session.exec(
                select(Group)
                .where(
                    Group.status == GroupStatus.ACTIVE,
                    Group.contract_address.is_not(None),
                    Group.frequency_days.is_not(None),
                    Group.frequency_days > 0,
                    Group.total_cycle_amount_usdc.is_not(None),
                    Group.total_cycle_amount_usdc > 0,
                )
                .order_by(Group.id.desc())
                .limit(config.SCHEDULER_BATCH_SIZE)
            ).all())

    async def process_group(self, group: Group) -> Optional[CyclePlan]:
        plan = self.reserve_cycle(group.id)
        if plan is None:
            await self.resume_stranded(group)
            return None

        try:
            await self.notify_winner(plan)
        except MessagingError as e:
            logger.error("Winner notification failed group=%s cycle=%s: %s", plan.group_id, plan.cycle_index, e)

        for payer in plan.payers:
            await self.dispatch_payment_request(plan.group_id, plan.group_name, plan.contract_address, plan.amount_usd, plan.cycle_index, payer)

        logger.info("Cycle started: group=%s cycle=%s winnerTurn=%s", plan.group_id, plan.cycle_index, plan.winner_turn)
        return plan

    def reserve_cycle(self, group_id: int) -> Optional[CyclePlan]:
        """
        Reads membership and cycle state and stages the cycle's orders in one
        transaction, holding the group row lock so no other worker can start
        the same cycle.
        """
        with self.db.session() as session:
            group = session.exec(
                select(Group).where(Group.id == group_id).with_for_update(skip_locked=True)
            ).first()
            if group is None:
                return None

            rows = session.exec(
                select(Membership.user_id, User.phone_number, Membership.turn_number)
                .join(User, User.id == Membership.user_id)
                .where(Membership.group_id == group_id)
                .order_by(Membership.turn_number)
            ).all()
            members = [Member(user_id=u, phone=normalize_phone(p), turn_number=t) for u, p, t in rows]
            if len(members) < 2:
                return None

            state = load_cycle_state(session, group_id)
            now = self.clock()
            if not is_cycle_due(state.last_created_at, group.frequency_days, now, has_cycle=state.last_index is not None):
                return None

            cycle_index = state.next_index
            winner = resolve_winner(members, cycle_index)
            plan = CyclePlan(
                group_id=group.id,
                group_name=group.name,
                contract_address=group.contract_address,
                amount_usd=group.total_cycle_amount_usdc,
                cycle_index=cycle_index,
                winner_turn=winner_turn(cycle_index, len(members)),
                winner=winner,
            )

            for member in members:
                if member.user_id == winner.user_id:
                    continue
                order = self.ledger.add_pending(
                    session,
                    user_id=member.user_id,
                    group_id=group.id,
                    amount_usd=group.total_cycle_amount_usdc,
                    metadata={
                        "kind": TANDA_QUOTA,
                        "cycle_index": cycle_index,
                        "group_id": group.id,
                        "group_name": group.name,
                        "payer_phone": member.phone,
                        "winner_phone": winner.phone,
                    },
                    now=now,
                )
                plan.payers.append(PayerOrder(order_id=order.id, phone=member.phone))

            session.commit()
            return plan

    async def notify_winner(self, plan: CyclePlan):
        suffix = f"{plan.group_id}:{plan.cycle_index}"
        await self.messenger.send(ButtonsMessage(
            to=plan.winner.phone,
            body=f"🎉 ¡Es tu turno en \"{plan.group_name}\"!\n\n¿Cómo quieres retirar?",
            buttons=[
                Button(id=f"payout:fiat:{suffix}", title="Retirar a banco"),
                Button(id=f"payout:usdc:{suffix}", title="Retirar USDC"),
                Button(id=f"payout:later:{suffix}", title="Luego"),
            ],
            header_image_url=config.payment_header_image_url() or None,
            footer=f"Ciclo #{plan.cycle_index + 1}",
        ))

    async def dispatch_payment_request(self, group_id: int, group_name: str, contract_address: str, amount_usd, cycle_index: int, payer: PayerOrder) -> bool:
        """
        Negotiate, claim and message one payer. Failures stay with this payer.
        """
        try:
            negotiation = await self.payments.negotiate_payment(
                order_id=payer.order_id,
                amount_usd=amount_usd,
                pay_to=contract_address,
                description=f"Cuota tanda {group_name} (ciclo #{cycle_index + 1})",
                resource=f"tanda:{group_id}:cycle:{cycle_index}",
            )
            self.ledger.claim(payer.order_id, negotiation)

            base = config.main_page_url().rstrip("/")
            await self.messenger.send(PaymentRequestMessage(
                to=payer.phone,
                month=month_name(self.clock()),
                total_amount=f"${amount_usd:.2f} USD",
                exchange_rate="1.00",
                group_name=group_name,
                payment_url=f"{base}/pagos/{payer.order_id}" if base else None,
            ))

            qr = (negotiation.qr or "").strip()
            if qr and HTTP_LINK_RE.match(qr):
                await self.messenger.send(ImageMessage(
                    to=payer.phone,
                    link=qr,
                    caption="Escanea el QR para pagar. Luego sube tu comprobante si aplica.",
                ))
            elif qr:
                logger.debug("QR for order %s is not an http(s) link; image skipped", payer.order_id)

            sticker = config.payment_sticker_url()
            if sticker:
                await self.messenger.send(StickerMessage(to=payer.phone, link=sticker))
            return True

        except (PaymentBackendError, MessagingError, InvalidTransition, SQLAlchemyError) as e:
            logger.error("Payment request failed order=%s payer=%s: %s", payer.order_id, payer.phone, e)
            return False

    async def resume_stranded(self, group: Group):
        """
        Retries orders of the latest cycle that never got past PENDING.
        """
        cutoff = self.clock() - STRANDED_ORDER_GRACE
        with self.db.session() as session:
            state = load_cycle_state(session, group.id)
            if state.last_index is None:
                return
            orders = session.exec(
                select(PaymentOrder).where(
                    PaymentOrder.group_id == group.id,
                    PaymentOrder.status == OrderStatus.PENDING,
                    PaymentOrder.updated_at <= cutoff,
                )
            ).all()

        for order in orders:
            metadata = order.proof_metadata or {}
            if metadata.get("kind") != TANDA_QUOTA or cycle_index_of(metadata) != state.last_index:
                continue
            logger.info("Retrying stranded order %s (group=%s cycle=%s)", order.id, group.id, state.last_index)
            await self.dispatch_payment_request(
                group.id, group.name, group.contract_address, group.total_cycle_amount_usdc,
                state.last_index, PayerOrder(order_id=order.id, phone=metadata.get("payer_phone", "")),
            )
