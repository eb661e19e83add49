import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlmodel import select

import config
from database import Database
from groups import upsert_user
from models import Group, GroupInvitation, InvitationStatus, Membership, as_utc, normalize_phone, utcnow

logger = logging.getLogger(__name__)

ACCEPT = "ACCEPT"
DECLINE = "DECLINE"


class InviteCodeExhausted(RuntimeError):
    """Every attempt to allocate a unique invite code collided."""


@dataclass
class InviteOutcome:
    # not_found | already_accepted | already_declined | expired | declined | accepted
    status: str
    group_id: Optional[int] = None
    turn_number: Optional[int] = None
    membership_id: Optional[int] = None


def generate_invite_code() -> str:
    return secrets.token_hex(config.INVITE_CODE_LENGTH // 2).upper()


class InvitationManager:
    """
    Invite-code lifecycle. Status only moves PENDING -> one terminal state, and the
    turn number is assigned when the invitation is accepted, never before.
    """

    def __init__(self, db: Database, clock: Callable = utcnow, ttl_hours: Optional[int] = None):
        self.db = db
        self.clock = clock
        self.ttl_hours = ttl_hours

    def create_invite(self, group_id: int, inviter_phone: str, invited_phone: str) -> str:
        now = self.clock()
        expires_at = now + timedelta(hours=self.ttl_hours) if self.ttl_hours else None

        for attempt in range(config.INVITE_CODE_ATTEMPTS):
            code = generate_invite_code()
            stmt = (
                self.db.insert(GroupInvitation)
                .values(
                    group_id=group_id,
                    inviter_phone=normalize_phone(inviter_phone) or inviter_phone,
                    invited_phone=normalize_phone(invited_phone),
                    invite_code=code,
                    status=InvitationStatus.PENDING,
                    created_at=now,
                    expires_at=expires_at,
                )
                .on_conflict_do_nothing(index_elements=["invite_code"])
                .returning(GroupInvitation.__table__.c.id)
            )
            with self.db.session() as session:
                inserted = session.exec(stmt).first()
                session.commit()
            if inserted:
                return code
            logger.warning("Invite code collision on attempt %s for group %s", attempt + 1, group_id)

        raise InviteCodeExhausted(f"Could not allocate a unique invite code for group {group_id}")

    def respond(self, invited_phone: str, code: str, action: str, display_name: Optional[str] = None) -> InviteOutcome:
        invited_phone = normalize_phone(invited_phone)
        code = (code or "").strip().upper()
        action = (action or "").strip().upper()
        if action not in (ACCEPT, DECLINE):
            raise ValueError(f"Unknown invitation action: {action}")

        with self.db.session() as session:
            invitation = session.exec(
                select(GroupInvitation).where(
                    GroupInvitation.invite_code == code,
                    GroupInvitation.invited_phone == invited_phone,
                )
            ).first()
            if invitation is None:
                return InviteOutcome("not_found")

            terminal = _terminal_outcome(invitation)
            if terminal:
                return terminal

            now = self.clock()
            if invitation.expires_at and as_utc(invitation.expires_at) < now:
                self._close(session, invitation.id, InvitationStatus.EXPIRED, now)
                session.commit()
                return InviteOutcome("expired", group_id=invitation.group_id)

            if action == DECLINE:
                if not self._close(session, invitation.id, InvitationStatus.DECLINED, now):
                    session.rollback()
                    return self._reload_outcome(session, invitation.id)
                session.commit()
                return InviteOutcome("declined", group_id=invitation.group_id)

            return self._accept(session, invitation, display_name, now)

    def _accept(self, session, invitation: GroupInvitation, display_name: Optional[str], now) -> InviteOutcome:
        group_id = invitation.group_id

        # Serializes turn allocation per group (no-op on SQLite, which locks the whole file).
        session.exec(select(Group.id).where(Group.id == group_id).with_for_update()).first()

        if not self._close(session, invitation.id, InvitationStatus.ACCEPTED, now):
            session.rollback()
            return self._reload_outcome(session, invitation.id)

        user_id = upsert_user(self.db, session, invitation.invited_phone, display_name)

        max_turn = session.exec(
            select(func.coalesce(func.max(Membership.turn_number), 0)).where(Membership.group_id == group_id)
        ).one()
        turn_number = int(max_turn) + 1

        stmt = self.db.insert(Membership).values(
            user_id=user_id,
            group_id=group_id,
            is_admin=False,
            turn_number=turn_number,
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "group_id"],
            set_={"turn_number": stmt.excluded.turn_number},
        ).returning(Membership.__table__.c.id)
        membership_id = session.exec(stmt).scalar_one()

        session.exec(
            update(GroupInvitation)
            .where(GroupInvitation.id == invitation.id)
            .values(invited_user_id=user_id, membership_id=membership_id)
        )
        session.commit()

        logger.info("Invitation %s accepted: group=%s turn=%s", invitation.id, group_id, turn_number)
        return InviteOutcome("accepted", group_id=group_id, turn_number=turn_number, membership_id=membership_id)

    def _close(self, session, invitation_id: int, status: str, now) -> bool:
        # Only a PENDING row can move; a concurrent responder sees rowcount 0.
        result = session.exec(
            update(GroupInvitation)
            .where(GroupInvitation.id == invitation_id, GroupInvitation.status == InvitationStatus.PENDING)
            .values(status=status, responded_at=now)
        )
        return result.rowcount == 1

    def _reload_outcome(self, session, invitation_id: int) -> InviteOutcome:
        invitation = session.get(GroupInvitation, invitation_id, populate_existing=True)
        return _terminal_outcome(invitation) or InviteOutcome("not_found")


def _terminal_outcome(invitation: GroupInvitation) -> Optional[InviteOutcome]:
    if invitation.status == InvitationStatus.ACCEPTED:
        return InviteOutcome(
            "already_accepted",
            group_id=invitation.group_id,
            membership_id=invitation.membership_id,
        )
    if invitation.status == InvitationStatus.DECLINED:
        return InviteOutcome("already_declined", group_id=invitation.group_id)
    if invitation.status == InvitationStatus.EXPIRED:
        return InviteOutcome("expired", group_id=invitation.group_id)
    return None
