import logging
import re
import secrets
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

import config
from database import Database, GatewayUnavailable
from models import VerificationCode, as_utc, normalize_phone, utcnow
from security_utils import hash_code, verify_code

logger = logging.getLogger(__name__)

# The chat surface wraps the OTP as ~*CODE*~ (or ~*CODE~*).
CODE_MARKER_RE = re.compile(r"~\*([^~*]+)(?:\*~|~\*)")


class VerificationUnavailable(RuntimeError):
    """The store could not be reached. Distinct from a wrong or expired code."""


def generate_code(length: int = config.OTP_LENGTH) -> str:
    return "".join(secrets.choice(config.OTP_ALPHABET) for _ in range(length))


def extract_code(text: Optional[str]) -> Optional[str]:
    """
    Pulls the OTP out of free-form chat text.

    "hello ~*AB12CD*~ bye" -> "AB12CD"; no well-formed marker pair -> None.
    """
    if not text:
        return None
    match = CODE_MARKER_RE.search(text)
    if not match:
        return None
    code = match.group(1).strip()
    return code or None


class VerificationStore:
    """
    Phone OTP lifecycle: issue, single-use confirm, status.

    At most one row per phone; issuing again overwrites any previous code.
    """

    def __init__(self, db: Database, clock: Callable = utcnow):
        self.db = db
        self.clock = clock
        self.ttl = timedelta(seconds=config.OTP_TTL_SECONDS)

    def issue(self, phone: str) -> dict:
        phone = normalize_phone(phone)
        code = generate_code()
        expires_at = self.clock() + self.ttl

        values = {
            "phone": phone,
            "code": hash_code(code),
            "expires_at": expires_at,
            "verified": False,
            "verified_at": None,
            "whatsapp_username": None,
            "whatsapp_number": None,
        }

        with self._guard("issue"):
            stmt = self.db.insert(VerificationCode).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["phone"],
                set_={k: stmt.excluded[k] for k in values if k != "phone"},
            )
            with self.db.session() as session:
                session.exec(stmt)
                session.commit()

        return {"code": code, "expires_at": expires_at}

    def confirm(
        self,
        phone: str,
        code: str,
        display_name: Optional[str] = None,
        display_number: Optional[str] = None,
    ) -> bool:
        phone = normalize_phone(phone)
        candidate = (code or "").strip().upper()
        if not phone or not candidate:
            return False

        with self._guard("confirm"):
            with self.db.session() as session:
                row = session.exec(select(VerificationCode).where(VerificationCode.phone == phone)).first()
                if not row or not row.code:
                    return False

                now = self.clock()
                if row.expires_at and as_utc(row.expires_at) < now:
                    session.exec(delete(VerificationCode).where(VerificationCode.id == row.id))
                    session.commit()
                    logger.info("Expired verification code removed for %s", phone)
                    return False

                if not verify_code(candidate, row.code):
                    return False

                # Compare-and-set on the stored hash: a concurrent confirm loses.
                result = session.exec(
                    update(VerificationCode)
                    .where(VerificationCode.id == row.id, VerificationCode.code == row.code)
                    .values(
                        verified=True,
                        verified_at=now,
                        code=None,
                        expires_at=now,
                        whatsapp_username=display_name or row.whatsapp_username,
                        whatsapp_number=display_number or row.whatsapp_number,
                    )
                )
                session.commit()
                return result.rowcount == 1

    def status(self, phone: str) -> dict:
        phone = normalize_phone(phone)
        with self._guard("status"):
            with self.db.session() as session:
                row = session.exec(select(VerificationCode).where(VerificationCode.phone == phone)).first()

        if not row:
            return {"verified": False, "timestamp": None, "whatsapp_username": None, "whatsapp_number": None}

        return {
            "verified": row.verified,
            "timestamp": as_utc(row.verified_at),
            "whatsapp_username": row.whatsapp_username,
            "whatsapp_number": row.whatsapp_number,
        }

    def record_confirmation(
        self,
        phone: str,
        verified: bool,
        timestamp=None,
        display_name: Optional[str] = None,
        display_number: Optional[str] = None,
    ) -> dict:
        """
        Stores a verification result reported by the onboarding frontend.
        A positive result consumes any outstanding code.
        """
        phone = normalize_phone(phone)
        now = self.clock()
        verified_at = (timestamp or now) if verified else None

        with self._guard("record_confirmation"):
            with self.db.session() as session:
                row = session.exec(select(VerificationCode).where(VerificationCode.phone == phone)).first()
                if row is None:
                    row = VerificationCode(phone=phone, expires_at=now + self.ttl)
                row.verified = verified
                row.verified_at = verified_at
                row.whatsapp_username = display_name
                row.whatsapp_number = display_number
                if verified:
                    row.code = None
                    row.expires_at = verified_at
                session.add(row)
                session.commit()

        return self.status(phone)

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except (GatewayUnavailable, SQLAlchemyError) as exc:
            logger.error("Verification store failure during %s: %s", operation, exc)
            raise VerificationUnavailable(f"Verification subsystem unavailable ({operation})") from exc
