import logging

import google.generativeai as genai

import config

logger = logging.getLogger(__name__)

# --- THE PERSONA ---
SYSTEM_INSTRUCTION = """
You are PasaTanda, a friendly assistant that runs rotating savings groups (tandas) on WhatsApp.
You answer in the user's language, usually Spanish.

RULES:
1. To join a tanda the user replies "ACEPTAR <code>" with the code from their invitation.
2. Payment requests arrive automatically each cycle; never ask for card numbers or passwords.
3. Never invent amounts, dates or turn numbers.
4. Keep answers short (under 2 sentences) for WhatsApp readability.
"""

FALLBACK_REPLY = "Ahora mismo no puedo responder. Intenta de nuevo en unos minutos 🙏"


def get_ai_response(user_text: str) -> str:
    """
    Sends text to Gemini and gets a short conversational reply.
    """
    api_key = config.google_api_key()
    if not api_key:
        return FALLBACK_REPLY

    try:
        genai.configure(api_key=api_key)
        model = genai.GenerativeModel("gemini-2.0-flash")
        prompt = f"{SYSTEM_INSTRUCTION}\n\nUser: {user_text}\nPasaTanda:"
        response = model.generate_content(prompt)
        return response.text.strip()
    except Exception as e:
        logger.error("AI chat error: %s", e)
        return FALLBACK_REPLY
