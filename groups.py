import logging
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlmodel import select

from database import Database
from models import Group, GroupStatus, Membership, User, normalize_phone, utcnow

logger = logging.getLogger(__name__)

STROOPS_PER_UNIT = Decimal(10_000_000)


class GroupActivationError(RuntimeError):
    """The group cannot be activated: missing terms or no settlement address returned."""


def upsert_user(db: Database, session, phone: str, username: Optional[str] = None, preferred_currency: str = "USD") -> int:
    """
    Inserts the user keyed by phone, or refreshes the username of the existing row.
    Runs inside the caller's session so it commits with the caller's unit of work.
    """
    phone = normalize_phone(phone)
    stmt = db.insert(User).values(
        phone_number=phone,
        username=username,
        preferred_currency=preferred_currency,
        created_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["phone_number"],
        set_={"username": func.coalesce(stmt.excluded.username, User.__table__.c.username)},
    ).returning(User.__table__.c.id)
    return session.exec(stmt).scalar_one()


def wallet_ref(user: User) -> str:
    # Users without a self-custody key are handled as managed wallets keyed by phone.
    return user.stellar_public_key or user.phone_number


class GroupOnboarding:
    def __init__(self, db: Database, settlement, clock: Callable = utcnow):
        self.db = db
        self.settlement = settlement
        self.clock = clock

    def create_draft_group(
        self,
        creator_phone: str,
        name: str,
        amount_usd,
        frequency_days: int,
        yield_enabled: bool = True,
        creator_name: Optional[str] = None,
    ) -> Group:
        """
        Creates a DRAFT group with the creator as its only admin, holding turn 1.
        """
        with self.db.session() as session:
            user_id = upsert_user(self.db, session, creator_phone, creator_name)
            group = Group(
                name=name,
                status=GroupStatus.DRAFT,
                total_cycle_amount_usdc=Decimal(str(amount_usd)),
                frequency_days=frequency_days,
                yield_enabled=yield_enabled,
                created_at=self.clock(),
            )
            session.add(group)
            session.flush()
            group.group_whatsapp_id = f"group-{group.id}@g.us"
            session.add(Membership(user_id=user_id, group_id=group.id, is_admin=True, turn_number=1, created_at=self.clock()))
            session.commit()
            session.refresh(group)
            logger.info("Draft group %s created by %s", group.id, normalize_phone(creator_phone))
            return group

    def get_group(self, group_id: int) -> Optional[Group]:
        with self.db.session() as session:
            return session.get(Group, group_id)

    def configure_group(self, group_id: int, amount_usd=None, frequency_days: Optional[int] = None, yield_enabled: Optional[bool] = None) -> Optional[Group]:
        """
        Changes the terms of a DRAFT group. Active groups keep the terms their contract was deployed with.
        """
        with self.db.session() as session:
            group = session.get(Group, group_id)
            if group is None:
                return None
            if group.status != GroupStatus.DRAFT:
                raise GroupActivationError(f"Group {group_id} is already {group.status}")
            if amount_usd is not None:
                group.total_cycle_amount_usdc = Decimal(str(amount_usd))
            if frequency_days is not None:
                group.frequency_days = frequency_days
            if yield_enabled is not None:
                group.yield_enabled = yield_enabled
            session.add(group)
            session.commit()
            session.refresh(group)
            return group

    def members(self, group_id: int) -> list:
        with self.db.session() as session:
            rows = session.exec(
                select(Membership, User)
                .join(User, User.id == Membership.user_id)
                .where(Membership.group_id == group_id)
                .order_by(Membership.turn_number)
            ).all()

        return [
            {
                "user_id": user.id,
                "phone": user.phone_number,
                "name": user.username,
                "is_admin": membership.is_admin,
                "turn_number": membership.turn_number,
                "wallet": wallet_ref(user),
            }
            for membership, user in rows
        ]

    async def activate(self, group_id: int) -> Optional[Group]:
        """
        DRAFT -> ACTIVE, exactly once, when the settlement contract address is known.
        Calling it again on an active group returns the group unchanged.
        """
        group = self.get_group(group_id)
        if group is None:
            return None
        if group.contract_address:
            return group

        if not group.total_cycle_amount_usdc or group.total_cycle_amount_usdc <= 0:
            raise GroupActivationError(f"Group {group_id} has no cycle amount")
        if not group.frequency_days or group.frequency_days <= 0:
            raise GroupActivationError(f"Group {group_id} has no frequency")

        members = self.members(group_id)
        admin = next((m for m in members if m["is_admin"]), None)
        if admin is None:
            raise GroupActivationError(f"Group {group_id} has no admin")

        address = await self.settlement.create_group(
            admin=admin["wallet"],
            amount_stroops=str(int(group.total_cycle_amount_usdc * STROOPS_PER_UNIT)),
            frequency_days=group.frequency_days,
            members=[m["wallet"] for m in members],
            yield_enabled=group.yield_enabled,
        )
        if not address:
            raise GroupActivationError(f"Settlement backend returned no contract address for group {group_id}")

        with self.db.session() as session:
            result = session.exec(
                update(Group)
                .where(Group.id == group_id, Group.status == GroupStatus.DRAFT, Group.contract_address.is_(None))
                .values(contract_address=address, status=GroupStatus.ACTIVE)
            )
            session.commit()

        if result.rowcount != 1:
            logger.warning("Group %s was activated concurrently; keeping the stored address", group_id)
        else:
            logger.info("Group %s activated with contract %s", group_id, address)
        return self.get_group(group_id)
