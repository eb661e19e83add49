from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from database import Database
from models import Group, GroupStatus, Membership, User
from payments_utils import Negotiation, PaymentBackendError, VerificationResult
from whatsapp_utils import MessagingError


class FakeClock:
    def __init__(self, now=datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeMessenger:
    def __init__(self):
        self.sent = []
        self.read = []
        self.fail_for = set()

    async def send(self, message):
        if message.to in self.fail_for:
            raise MessagingError(f"cannot reach {message.to}")
        self.sent.append(message)
        return {"messages": [{"id": f"wamid.{len(self.sent)}"}]}

    async def mark_as_read(self, message_id):
        self.read.append(message_id)

    def to(self, phone, kind=None):
        return [m for m in self.sent if m.to == phone and (kind is None or isinstance(m, kind))]


class FakePayments:
    def __init__(self, qr="https://qr.example.com/order.png"):
        self.qr = qr
        self.negotiations = []
        self.fiat_checks = []
        self.crypto_checks = []
        self.fail_negotiations = 0
        self.verify_success = True

    async def negotiate_payment(self, order_id, amount_usd, pay_to, description=None, resource=None):
        self.negotiations.append({"order_id": order_id, "amount_usd": amount_usd, "pay_to": pay_to, "resource": resource})
        if self.fail_negotiations:
            self.fail_negotiations -= 1
            raise PaymentBackendError("backend down")
        return Negotiation(job_id=f"job-{order_id}", challenge="AAAAXDR", qr=self.qr)

    async def verify_fiat(self, order_id, amount_usd, proof_metadata, job_id=None):
        self.fiat_checks.append({"order_id": order_id, "proof": proof_metadata, "job_id": job_id})
        if self.verify_success:
            return VerificationResult(success=True, tx_hash="fiat-tx-1", status_code=200)
        return VerificationResult(success=False, reason="amount mismatch", status_code=402)

    async def forward_crypto(self, order_id, amount_usd, x_payment):
        self.crypto_checks.append({"order_id": order_id, "x_payment": x_payment})
        return VerificationResult(success=self.verify_success, tx_hash="crypto-tx-1", status_code=200)


class FakeSettlement:
    def __init__(self, address="CCONTRACTADDRESS"):
        self.address = address
        self.created = []
        self.payouts = []

    async def create_group(self, admin, amount_stroops, frequency_days, members, yield_enabled=True):
        self.created.append({
            "admin": admin,
            "amount_stroops": amount_stroops,
            "frequency_days": frequency_days,
            "members": members,
            "yield_enabled": yield_enabled,
        })
        return self.address

    async def payout(self, group_address, winner_address):
        self.payouts.append((group_address, winner_address))
        return "payout-tx-1"


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def db(engine):
    return Database(engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def settlement():
    return FakeSettlement()


@pytest.fixture
def make_group(db, clock):
    """
    Inserts a group and its members directly. Phones are listed in turn order.
    """
    def _make(phones, amount="10", frequency_days=7, active=True, name="Ahorro Familiar"):
        with db.session() as session:
            group = Group(
                name=name,
                status=GroupStatus.ACTIVE if active else GroupStatus.DRAFT,
                contract_address="CGROUPCONTRACT" if active else None,
                total_cycle_amount_usdc=Decimal(amount),
                frequency_days=frequency_days,
                created_at=clock(),
            )
            session.add(group)
            session.flush()
            for turn, phone in enumerate(phones, start=1):
                user = User(phone_number=phone, username=f"user{turn}")
                session.add(user)
                session.flush()
                session.add(Membership(user_id=user.id, group_id=group.id, is_admin=turn == 1, turn_number=turn))
            session.commit()
            return group.id

    return _make
