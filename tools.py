import logging
import re
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from database import GatewayUnavailable
from groups import GroupActivationError, GroupOnboarding
from invitations import ACCEPT, DECLINE, InvitationManager, InviteCodeExhausted
from ledger import PaymentOrderLedger
from models import normalize_phone
from soroban_utils import SettlementError
from verification import VerificationStore, VerificationUnavailable, extract_code
from whatsapp_utils import MessagingError, TextMessage

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^\+?\d{8,15}$")


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(phone) and bool(PHONE_RE.match(re.sub(r"[\s-]", "", phone)))


def invite_text(group_name: str, code: str) -> str:
    return (
        f"📩 Te invitaron a unirte a la tanda \"{group_name}\".\n\n"
        f"Para aceptar responde: ACEPTAR {code}\n"
        f"Para rechazar responde: RECHAZAR {code}"
    )


INVITE_MESSAGES = {
    "not_found": "❌ No encontré esa invitación. Verifica el código y vuelve a intentarlo.",
    "already_accepted": "Esta invitación ya fue aceptada. Ya eres miembro de la tanda.",
    "already_declined": "Esta invitación ya fue rechazada.",
    "expired": "⌛ La invitación expiró. Pide que te envíen una nueva.",
    "declined": "Invitación rechazada. Si fue un error, pide una nueva invitación.",
}


class PasaTandaTools:
    """
    Operations the chat layer invokes on behalf of a user. Each returns a dict with a
    machine `status` and a short `message` for the chat; none of them raise.
    """

    def __init__(
        self,
        verification: VerificationStore,
        invitations: InvitationManager,
        onboarding: GroupOnboarding,
        ledger: PaymentOrderLedger,
        messenger,
    ):
        self.verification = verification
        self.invitations = invitations
        self.onboarding = onboarding
        self.ledger = ledger
        self.messenger = messenger

    async def _send_invite(self, phone: str, group_name: str, code: str):
        try:
            await self.messenger.send(TextMessage(to=phone, body=invite_text(group_name, code)))
        except MessagingError as e:
            logger.error("Invitation message to %s failed: %s", phone, e)

    # =========================================================================
    # GROUPS
    # =========================================================================

    async def create_group(
        self,
        sender_phone: str,
        group_name: Optional[str] = None,
        participants: Optional[List[str]] = None,
        amount_usd=1,
        frequency_days: int = 7,
        yield_enabled: bool = True,
        sender_name: Optional[str] = None,
    ) -> dict:
        if not is_valid_phone(sender_phone):
            return {"status": "invalid", "message": "Número de teléfono inválido."}
        if amount_usd is None or float(amount_usd) <= 0 or not frequency_days or int(frequency_days) <= 0:
            return {"status": "invalid", "message": "El monto y la frecuencia deben ser mayores a cero."}

        sender = normalize_phone(sender_phone)
        invited = []
        for phone in participants or []:
            phone = normalize_phone(phone)
            if phone and phone != sender and phone not in invited:
                invited.append(phone)

        try:
            group = self.onboarding.create_draft_group(
                creator_phone=sender,
                name=group_name or "PasaTanda",
                amount_usd=amount_usd,
                frequency_days=int(frequency_days),
                yield_enabled=yield_enabled,
                creator_name=sender_name,
            )
            invitations = []
            for phone in invited:
                code = self.invitations.create_invite(group.id, sender, phone)
                await self._send_invite(phone, group.name, code)
                invitations.append({"invited_phone": phone, "invite_code": code})
        except (GatewayUnavailable, SQLAlchemyError, InviteCodeExhausted) as e:
            logger.error("Error creating group for %s: %s", sender, e)
            return {"status": "error", "message": "No pude crear el grupo. Intenta de nuevo."}

        return {
            "status": "success",
            "group_id": group.id,
            "group_name": group.name,
            "invitations": invitations,
            "message": f"✅ Grupo \"{group.name}\" creado. Estado: DRAFT. Envié {len(invitations)} invitaciones.",
        }

    async def add_participant(self, group_id: int, participant_phone: str, inviter_phone: Optional[str] = None) -> dict:
        if not is_valid_phone(participant_phone):
            return {"status": "invalid", "message": "Número de teléfono inválido."}

        try:
            group = self.onboarding.get_group(group_id)
            if group is None:
                return {"status": "not_found", "message": "Grupo no encontrado."}
            phone = normalize_phone(participant_phone)
            code = self.invitations.create_invite(group.id, inviter_phone or "system", phone)
        except (GatewayUnavailable, SQLAlchemyError, InviteCodeExhausted) as e:
            logger.error("Error adding participant to group %s: %s", group_id, e)
            return {"status": "error", "message": "No pude enviar la invitación. Intenta de nuevo."}

        await self._send_invite(phone, group.name, code)
        return {
            "status": "success",
            "invite_code": code,
            "message": f"📩 Invitación enviada a {phone} para unirse a \"{group.name}\".",
        }

    def configure_group(self, group_id: int, amount_usd=None, frequency_days: Optional[int] = None, yield_enabled: Optional[bool] = None) -> dict:
        if amount_usd is None and frequency_days is None and yield_enabled is None:
            return {"status": "no_changes", "message": "No se especificaron cambios."}
        if (amount_usd is not None and float(amount_usd) <= 0) or (frequency_days is not None and int(frequency_days) <= 0):
            return {"status": "invalid", "message": "El monto y la frecuencia deben ser mayores a cero."}

        try:
            group = self.onboarding.configure_group(group_id, amount_usd, frequency_days, yield_enabled)
        except GroupActivationError:
            return {"status": "locked", "message": "La tanda ya está activa; sus condiciones no se pueden cambiar."}
        except (GatewayUnavailable, SQLAlchemyError) as e:
            logger.error("Error configuring group %s: %s", group_id, e)
            return {"status": "error", "message": "No pude actualizar la tanda."}

        if group is None:
            return {"status": "not_found", "message": "Grupo no encontrado."}
        return {"status": "success", "message": "⚙️ Configuración de la tanda actualizada."}

    def check_group_status(self, group_id: int) -> dict:
        try:
            group = self.onboarding.get_group(group_id)
            members = self.onboarding.members(group_id) if group else []
        except (GatewayUnavailable, SQLAlchemyError) as e:
            logger.error("Error reading group %s: %s", group_id, e)
            return {"status": "error", "message": "No pude consultar la tanda."}

        if group is None:
            return {"status": "not_found", "message": "Grupo no encontrado."}

        return {
            "status": "success",
            "group": {
                "name": group.name,
                "status": group.status,
                "contract_address": group.contract_address,
                "frequency_days": group.frequency_days,
                "yield_enabled": group.yield_enabled,
                "amount_usd": group.total_cycle_amount_usdc,
                "member_count": len(members),
            },
            "members": [
                {"phone": m["phone"], "name": m["name"], "is_admin": m["is_admin"], "turn_number": m["turn_number"]}
                for m in members
            ],
            "message": f"📊 \"{group.name}\": {group.status}, {len(members)} miembros.",
        }

    async def start_tanda(self, group_id: int) -> dict:
        try:
            group = await self.onboarding.activate(group_id)
        except GroupActivationError as e:
            logger.error("Activation of group %s refused: %s", group_id, e)
            return {"status": "error", "message": "No pude activar la tanda. Revisa monto, frecuencia y miembros."}
        except (GatewayUnavailable, SettlementError, SQLAlchemyError) as e:
            logger.error("Activation of group %s failed: %s", group_id, e)
            return {"status": "error", "message": "No pude desplegar el contrato de la tanda. Intenta más tarde."}

        if group is None:
            return {"status": "not_found", "message": "Grupo no encontrado."}
        return {
            "status": "success",
            "contract_address": group.contract_address,
            "message": f"🚀 La tanda \"{group.name}\" está activa.",
        }

    # =========================================================================
    # VERIFICATION & INVITATIONS
    # =========================================================================

    def verify_phone_code(self, sender_phone: str, code: str, display_name: Optional[str] = None) -> dict:
        candidate = extract_code(code) or (code or "").strip()
        if not candidate:
            return {"status": "not_verified", "message": "No se proporcionó un código válido."}

        try:
            verified = self.verification.confirm(sender_phone, candidate, display_name=display_name, display_number=normalize_phone(sender_phone))
        except VerificationUnavailable:
            return {"status": "error", "message": "La verificación no está disponible ahora. Intenta en unos minutos."}

        if verified:
            return {
                "status": "verified",
                "message": "✅ Verificamos tu teléfono correctamente. Continúa con el formulario para crear tu tanda.",
            }
        return {
            "status": "not_verified",
            "message": "No encontramos un código válido en tu mensaje. Copia el código tal como aparece entre ~* y *~.",
        }

    def respond_to_invitation(self, invited_phone: str, invite_code: str, action: str, invited_name: Optional[str] = None) -> dict:
        if not (invite_code or "").strip():
            return {"status": "invalid", "message": "Falta el código de invitación."}
        if (action or "").upper() not in (ACCEPT, DECLINE):
            return {"status": "invalid", "message": "La acción debe ser ACCEPT o DECLINE."}

        try:
            outcome = self.invitations.respond(invited_phone, invite_code, action, invited_name)
        except (GatewayUnavailable, SQLAlchemyError) as e:
            logger.error("Error answering invitation %s: %s", invite_code, e)
            return {"status": "error", "message": "No pude procesar tu respuesta. Intenta de nuevo."}

        if outcome.status == "accepted":
            return {
                "status": "accepted",
                "group_id": outcome.group_id,
                "membership_id": outcome.membership_id,
                "turn_number": outcome.turn_number,
                "message": f"✅ Invitación aceptada. Ya formas parte de la tanda. Tu turno asignado es #{outcome.turn_number}.",
            }
        return {"status": outcome.status, "group_id": outcome.group_id, "message": INVITE_MESSAGES[outcome.status]}

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def verify_payment_proof(self, order_id: str, extracted_data: Optional[dict]) -> dict:
        try:
            result = await self.ledger.verify_fiat_proof(order_id, extracted_data)
        except (GatewayUnavailable, SQLAlchemyError) as e:
            logger.error("Error verifying proof for %s: %s", order_id, e)
            return {"status": "error", "message": "No pude verificar el comprobante. Intenta de nuevo."}

        status = result["status"]
        messages = {
            "verified": "Pago verificado exitosamente ✅. El turno quedará marcado como pagado.",
            "rejected": "No pudimos verificar el pago. Revisa los datos del comprobante e inténtalo de nuevo.",
            "invalid": "Al comprobante le falta el número de referencia de la transacción.",
            "not_found": "No encontré esa orden de pago.",
            "conflict": "Esta orden ya no admite comprobantes.",
        }
        return {**result, "message": messages[status]}

    async def choose_payout(self, phone: str, method: str, group_id: int, cycle_index: int) -> dict:
        """
        Handles the winner's answer to the payout buttons.
        """
        if method == "later":
            return {"status": "deferred", "message": "👌 Listo, puedes retirar cuando quieras."}
        if method == "fiat":
            return {"status": "manual", "message": "🏦 Un administrador te contactará para el retiro a tu cuenta bancaria."}

        try:
            result = await self.ledger.payout_cycle(group_id, cycle_index, phone)
        except (GatewayUnavailable, SettlementError, SQLAlchemyError) as e:
            logger.error("Payout failed group=%s cycle=%s: %s", group_id, cycle_index, e)
            return {"status": "error", "message": "No pude procesar el retiro. Intenta más tarde."}

        status = result["status"]
        if status == "pending_payments":
            message = f"⏳ Aún faltan {result['outstanding']} pagos de este ciclo. Te avisaremos."
        elif status == "paid":
            message = f"💸 Retiro enviado. Tx: {result['tx_hash']}"
        elif status == "already_paid":
            message = "Este ciclo ya fue retirado."
        elif status == "not_winner":
            message = "Este retiro no corresponde a tu turno."
        else:
            message = "No encontré ese ciclo."
        return {**result, "message": message}
