import asyncio
import hashlib
import hmac
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

import config
from chat_utils import get_ai_response
from database import Database
from groups import GroupOnboarding
from intake import ProcessedMessageCache
from invitations import InvitationManager
from ledger import PaymentOrderLedger
from nlp import parse_button, parse_message
from payments_utils import PaymentBackend
from scheduler import PaymentCycleScheduler
from soroban_utils import SettlementClient
from tools import PasaTandaTools, is_valid_phone
from verification import VerificationStore, VerificationUnavailable
from whatsapp_utils import MessagingError, TextMessage, WhatsAppMessenger

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# --- REQUEST BODIES ---

class ConfirmVerificationBody(BaseModel):
    phone: Optional[str] = None
    verified: Optional[bool] = None
    timestamp: Optional[int] = None  # epoch milliseconds
    whatsappUsername: Optional[str] = None
    whatsappNumber: Optional[str] = None


class CreateGroupBody(BaseModel):
    phone: str
    name: Optional[str] = None
    participants: List[str] = []
    amountUsd: float = 1
    frequencyDays: int = 7
    enableYield: bool = True
    whatsappUsername: Optional[str] = None


class ParticipantBody(BaseModel):
    phone: str
    inviterPhone: Optional[str] = None


class ConfigureGroupBody(BaseModel):
    amountUsd: Optional[float] = None
    frequencyDays: Optional[int] = None
    enableYield: Optional[bool] = None


class InvitationResponseBody(BaseModel):
    phone: str
    inviteCode: str
    action: str
    name: Optional[str] = None


class ClaimOrderBody(BaseModel):
    paymentType: str
    proofMetadata: Optional[dict] = None
    xPayment: Optional[str] = None


class PaymentWebhookBody(BaseModel):
    order_id: str
    event_type: Optional[str] = None
    tx_hash: Optional[str] = None


def _http_result(result: dict) -> dict:
    status = result.get("status")
    if status == "invalid":
        raise HTTPException(status_code=400, detail=result)
    if status == "not_found":
        raise HTTPException(status_code=404, detail=result)
    if status == "error":
        raise HTTPException(status_code=503, detail=result)
    return result


def _signature_ok(secret: str, body: bytes, header: Optional[str]) -> bool:
    if not secret:
        return True
    if not header or not header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header[len("sha256="):])


def create_app(
    db: Optional[Database] = None,
    messenger=None,
    payments=None,
    settlement=None,
    dedup: Optional[ProcessedMessageCache] = None,
) -> FastAPI:
    db = db or Database.from_env()
    messenger = messenger or WhatsAppMessenger()
    payments = payments or PaymentBackend()
    settlement = settlement or SettlementClient()
    dedup = dedup or ProcessedMessageCache()

    verification = VerificationStore(db)
    invitations = InvitationManager(db, ttl_hours=config.invite_ttl_hours())
    onboarding = GroupOnboarding(db, settlement)
    ledger = PaymentOrderLedger(db, payments, settlement)
    tools = PasaTandaTools(verification, invitations, onboarding, ledger, messenger)
    scheduler = PaymentCycleScheduler(db, ledger, payments, messenger)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if db.is_available():
            db.init_db()
        task = asyncio.create_task(scheduler.run_forever())
        yield
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    app = FastAPI(lifespan=lifespan, title="PasaTanda Bot 🤝")
    app.state.tools = tools
    app.state.scheduler = scheduler
    app.state.dedup = dedup

    async def reply(to: str, text: str):
        try:
            await messenger.send(TextMessage(to=to, body=text))
        except MessagingError as e:
            logger.error("Reply to %s failed: %s", to, e)

    async def handle_message(msg: dict, contacts: list):
        sender = msg.get("from", "")
        profile_name = None
        for contact in contacts:
            if contact.get("wa_id") == sender:
                profile_name = (contact.get("profile") or {}).get("name")

        # 1. BUTTON REPLIES (winner payout choice)
        if msg.get("type") == "interactive":
            button_id = ((msg.get("interactive") or {}).get("button_reply") or {}).get("id", "")
            choice = parse_button(button_id)
            if choice["intent"] == "PAYOUT_CHOICE":
                result = await tools.choose_payout(sender, choice["method"], choice["group_id"], choice["cycle_index"])
                await reply(sender, result["message"])
            return

        if msg.get("type") != "text":
            return

        # 2. TEXT
        text = ((msg.get("text") or {}).get("body") or "").strip()
        parsed = parse_message(text)

        if parsed["intent"] == "VERIFY_CODE":
            # bcrypt and the session are blocking; keep them off the loop the scheduler shares.
            result = await run_in_threadpool(tools.verify_phone_code, sender, parsed["code"], display_name=profile_name)
        elif parsed["intent"] in ("ACCEPT_INVITE", "DECLINE_INVITE"):
            action = "ACCEPT" if parsed["intent"] == "ACCEPT_INVITE" else "DECLINE"
            result = await run_in_threadpool(tools.respond_to_invitation, sender, parsed["code"], action, invited_name=profile_name)
        else:
            # CHAT MODE
            result = {"message": get_ai_response(text)}

        await reply(sender, result["message"])

    # =========================================================================
    # WHATSAPP WEBHOOK
    # =========================================================================

    @app.get("/webhook")
    async def verify_webhook(
        mode: Optional[str] = Query(None, alias="hub.mode"),
        token: Optional[str] = Query(None, alias="hub.verify_token"),
        challenge: Optional[str] = Query(None, alias="hub.challenge"),
    ):
        if mode == "subscribe" and token and token == config.whatsapp_verify_token():
            return PlainTextResponse(challenge or "")
        raise HTTPException(status_code=403, detail="Verification failed")

    @app.post("/webhook")
    async def whatsapp_webhook(request: Request):
        body = await request.body()
        if not _signature_ok(config.whatsapp_app_secret(), body, request.headers.get("X-Hub-Signature-256")):
            raise HTTPException(status_code=401, detail="Invalid signature")

        data = await request.json()
        for entry in data.get("entry", []):
            for change in entry.get("changes", []):
                value = change.get("value") or {}
                for status in value.get("statuses", []):
                    logger.info("Message %s is %s for %s", status.get("id"), status.get("status"), status.get("recipient_id"))

                for msg in value.get("messages", []):
                    if dedup.seen(msg.get("id")):
                        logger.info("Duplicate delivery of %s ignored", msg.get("id"))
                        continue
                    if msg.get("id"):
                        await messenger.mark_as_read(msg["id"])
                    try:
                        await handle_message(msg, value.get("contacts", []))
                    except VerificationUnavailable:
                        await reply(msg.get("from", ""), "La verificación no está disponible ahora. Intenta en unos minutos.")

        return {"status": "ok"}

    # =========================================================================
    # ONBOARDING / OTP
    # =========================================================================

    @app.get("/api/onboarding/verify")
    def request_verification(phone: Optional[str] = None):
        if not is_valid_phone(phone):
            raise HTTPException(status_code=400, detail={"success": False, "message": "Número de teléfono inválido"})
        try:
            issued = verification.issue(phone)
        except VerificationUnavailable as e:
            raise HTTPException(status_code=503, detail={"success": False, "message": str(e)})
        return {
            "success": True,
            "code": issued["code"],
            "expiresAt": issued["expires_at"],
            "message": "Envía este código al bot de WhatsApp",
        }

    @app.get("/api/webhook/confirm_verification")
    def poll_verification(phone: Optional[str] = None):
        if not phone:
            raise HTTPException(status_code=400, detail={"success": False, "message": "Missing required field: phone"})
        try:
            return verification.status(phone)
        except VerificationUnavailable as e:
            raise HTTPException(status_code=503, detail={"success": False, "message": str(e)})

    @app.post("/api/webhook/confirm_verification")
    def confirm_verification(body: ConfirmVerificationBody):
        if not body.phone or body.verified is None:
            raise HTTPException(status_code=400, detail={"success": False, "message": "Missing required fields: phone and verified"})

        timestamp = None
        if body.timestamp:
            timestamp = datetime.fromtimestamp(body.timestamp / 1000, tz=timezone.utc)
        try:
            record = verification.record_confirmation(
                body.phone, body.verified, timestamp, body.whatsappUsername, body.whatsappNumber
            )
        except VerificationUnavailable as e:
            raise HTTPException(status_code=503, detail={"success": False, "message": str(e)})
        return {**record, "success": True, "message": "Phone verification confirmed successfully"}

    # =========================================================================
    # GROUPS & INVITATIONS
    # =========================================================================

    @app.post("/api/groups")
    async def create_group(body: CreateGroupBody):
        return _http_result(await tools.create_group(
            sender_phone=body.phone,
            group_name=body.name,
            participants=body.participants,
            amount_usd=body.amountUsd,
            frequency_days=body.frequencyDays,
            yield_enabled=body.enableYield,
            sender_name=body.whatsappUsername,
        ))

    @app.get("/api/groups/{group_id}")
    def group_status(group_id: int):
        return _http_result(tools.check_group_status(group_id))

    @app.patch("/api/groups/{group_id}")
    def configure_group(group_id: int, body: ConfigureGroupBody):
        return _http_result(tools.configure_group(group_id, body.amountUsd, body.frequencyDays, body.enableYield))

    @app.post("/api/groups/{group_id}/participants")
    async def add_participant(group_id: int, body: ParticipantBody):
        return _http_result(await tools.add_participant(group_id, body.phone, body.inviterPhone))

    @app.post("/api/groups/{group_id}/start")
    async def start_tanda(group_id: int):
        return _http_result(await tools.start_tanda(group_id))

    @app.post("/api/invitations/respond")
    def respond_invitation(body: InvitationResponseBody):
        return _http_result(tools.respond_to_invitation(body.phone, body.inviteCode, body.action, body.name))

    # =========================================================================
    # PAYMENT ORDERS
    # =========================================================================

    @app.get("/api/orders/{order_id}")
    def get_order(order_id: str):
        order = ledger.get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Orden no encontrada")
        return {
            "id": order.id,
            "status": order.status,
            "amountUsdc": order.amount_crypto_usdc,
            "amountFiat": order.amount_fiat,
            "currencyFiat": order.currency_fiat,
            "qrPayloadUrl": order.qr_payload_url,
            "xdrChallenge": order.xdr_challenge,
            "proofMetadata": order.proof_metadata,
            "groupId": order.group_id,
        }

    @app.post("/api/orders/{order_id}/claim")
    async def claim_order(order_id: str, body: ClaimOrderBody):
        if body.paymentType == "fiat":
            return _http_result(await tools.verify_payment_proof(order_id, body.proofMetadata))
        if body.paymentType == "crypto":
            return _http_result(await ledger.forward_crypto(order_id, body.xPayment))
        raise HTTPException(status_code=400, detail="paymentType inválido")

    @app.post("/webhook/payments/result", status_code=202)
    async def payment_result(body: PaymentWebhookBody):
        logger.info("Payment webhook %s for %s", body.event_type, body.order_id)
        result = ledger.complete(body.order_id, body.tx_hash)
        if result["status"] == "completed":
            payer = (result["order"].proof_metadata or {}).get("payer_phone")
            if payer:
                await reply(payer, "Recibimos confirmación del pago. ¡Gracias! El turno quedará marcado como pagado.")
        return {"status": "received", "order_status": result["status"]}

    return app


app = create_app()
