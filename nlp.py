import json
import logging
import re

import google.generativeai as genai

import config
from verification import extract_code

logger = logging.getLogger(__name__)

_model = None

# --- SYSTEM PROMPT ---
SYSTEM_PROMPT = """
You are the intent parser of PasaTanda, a WhatsApp bot for rotating savings groups (tandas).
Classify the 'Current Input' into exactly one intent.

The user usually writes Spanish. Invite codes are 8 characters, letters A-F and digits.

Return ONLY raw JSON with these keys:
- "intent": "ACCEPT_INVITE", "DECLINE_INVITE" or "CHAT"
- "code": the invite code in upper case, or null

Examples:
1. Input: "sí me uno, código 9f3a11bc" -> {"intent": "ACCEPT_INVITE", "code": "9F3A11BC"}
2. Input: "no gracias, paso de la tanda 0A1B2C3D" -> {"intent": "DECLINE_INVITE", "code": "0A1B2C3D"}
3. Input: "¿cuándo me toca?" -> {"intent": "CHAT", "code": null}
"""

INVITE_RE = re.compile(
    r"\b(aceptar|acepto|accept|rechazar|rechazo|decline)\b\W*([0-9a-f]{8})\b",
    re.IGNORECASE,
)
ACCEPT_WORDS = {"aceptar", "acepto", "accept"}
PAYOUT_RE = re.compile(r"^payout:(fiat|usdc|later):(\d+):(\d+)$")


def _get_model():
    global _model
    api_key = config.google_api_key()
    if not api_key:
        return None
    if _model is None:
        genai.configure(api_key=api_key)
        _model = genai.GenerativeModel("gemini-2.0-flash")
    return _model


def parse_button(button_id: str) -> dict:
    """
    "payout:usdc:12:0" -> {"intent": "PAYOUT_CHOICE", "method": "usdc", "group_id": 12, "cycle_index": 0}
    """
    match = PAYOUT_RE.match((button_id or "").strip())
    if not match:
        return {"intent": "UNKNOWN"}
    return {
        "intent": "PAYOUT_CHOICE",
        "method": match.group(1),
        "group_id": int(match.group(2)),
        "cycle_index": int(match.group(3)),
    }


def parse_message(text: str) -> dict:
    """
    Parses inbound chat text. The fixed chat conventions (OTP markers, ACEPTAR/RECHAZAR
    replies) are matched offline; the model only sees what those rules miss.
    """
    result = parse_message_offline(text)
    if result["intent"] != "CHAT" or _get_model() is None:
        return result

    try:
        return parse_message_ai(text)
    except Exception as e:
        logger.warning("AI intent parsing failed (%s); treating as chat.", e)
        return result


def parse_message_ai(text: str) -> dict:
    response = _get_model().generate_content(f"{SYSTEM_PROMPT}\n\nCurrent Input: {text}")
    clean_text = response.text.replace("```json", "").replace("```", "").strip()
    try:
        parsed = json.loads(clean_text)
    except json.JSONDecodeError:
        return {"intent": "CHAT", "code": None, "raw_text": text}

    intent = parsed.get("intent")
    code = (parsed.get("code") or "").strip().upper()
    if intent in ("ACCEPT_INVITE", "DECLINE_INVITE") and re.fullmatch(r"[0-9A-F]{8}", code):
        return {"intent": intent, "code": code, "raw_text": text}
    return {"intent": "CHAT", "code": None, "raw_text": text}


def parse_message_offline(text: str) -> dict:
    text = (text or "").strip()
    response = {"intent": "CHAT", "code": None, "raw_text": text}

    # 1. OTP between ~* and *~
    otp = extract_code(text)
    if otp:
        response["intent"] = "VERIFY_CODE"
        response["code"] = otp
        return response

    # 2. INVITATION REPLY: "ACEPTAR 9F3A11BC" / "RECHAZAR 9F3A11BC"
    match = INVITE_RE.search(text)
    if match:
        accepted = match.group(1).lower() in ACCEPT_WORDS
        response["intent"] = "ACCEPT_INVITE" if accepted else "DECLINE_INVITE"
        response["code"] = match.group(2).upper()

    return response
