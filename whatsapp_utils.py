import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

import config

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"


class MessagingError(RuntimeError):
    """The Graph API rejected a message or could not be reached."""


# --- OUTBOUND MESSAGE KINDS ---
# One dataclass per kind, each carrying only the fields that kind needs.

@dataclass
class TextMessage:
    to: str
    body: str
    preview_url: bool = False


@dataclass
class ImageMessage:
    to: str
    link: str
    caption: Optional[str] = None


@dataclass
class StickerMessage:
    to: str
    link: str


@dataclass
class Button:
    id: str
    title: str


@dataclass
class ButtonsMessage:
    to: str
    body: str
    buttons: List[Button]
    header_image_url: Optional[str] = None
    footer: Optional[str] = None


@dataclass
class PaymentRequestMessage:
    """The approved `payment_request` template."""
    to: str
    month: str
    total_amount: str
    exchange_rate: str
    group_name: str
    payment_url: Optional[str] = None
    header_image_url: Optional[str] = None
    language: str = "es"


@dataclass
class TemplateMessage:
    to: str
    name: str
    language: str = "es"
    components: list = field(default_factory=list)


def build_payload(message) -> dict:
    """
    Turns an outbound message into the Cloud API request body.
    """
    payload = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": message.to}

    if isinstance(message, TextMessage):
        payload["type"] = "text"
        payload["text"] = {"body": message.body, "preview_url": message.preview_url}

    elif isinstance(message, ImageMessage):
        image = {"link": message.link}
        if message.caption:
            image["caption"] = message.caption
        payload["type"] = "image"
        payload["image"] = image

    elif isinstance(message, StickerMessage):
        payload["type"] = "sticker"
        payload["sticker"] = {"link": message.link}

    elif isinstance(message, ButtonsMessage):
        interactive = {
            "type": "button",
            "body": {"text": message.body},
            "action": {
                "buttons": [
                    # Titles are capped at 20 characters by the API.
                    {"type": "reply", "reply": {"id": b.id, "title": b.title[:20]}}
                    for b in message.buttons
                ]
            },
        }
        if message.header_image_url:
            interactive["header"] = {"type": "image", "image": {"link": message.header_image_url}}
        if message.footer:
            interactive["footer"] = {"text": message.footer[:60]}
        payload["type"] = "interactive"
        payload["interactive"] = interactive

    elif isinstance(message, PaymentRequestMessage):
        components = []
        if message.header_image_url:
            components.append({
                "type": "header",
                "parameters": [{"type": "image", "image": {"link": message.header_image_url}}],
            })
        components.append({
            "type": "body",
            "parameters": [
                {"type": "text", "text": message.month},
                {"type": "text", "text": message.total_amount},
                {"type": "text", "text": message.exchange_rate},
                {"type": "text", "text": message.group_name},
            ],
        })
        if message.payment_url:
            components.append({
                "type": "button",
                "sub_type": "url",
                "index": 0,
                "parameters": [{"type": "text", "text": message.payment_url}],
            })
        payload["type"] = "template"
        payload["template"] = {
            "name": "payment_request",
            "language": {"code": message.language},
            "components": components,
        }

    elif isinstance(message, TemplateMessage):
        template = {"name": message.name, "language": {"code": message.language}}
        if message.components:
            template["components"] = message.components
        payload["type"] = "template"
        payload["template"] = template

    else:
        raise TypeError(f"Unsupported outbound message: {type(message).__name__}")

    return payload


class WhatsAppMessenger:
    """
    Async sender for the WhatsApp Cloud API. Every send raises MessagingError on
    failure; callers decide whether that aborts their loop.
    """

    def __init__(
        self,
        phone_number_id: Optional[str] = None,
        token: Optional[str] = None,
        api_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.phone_number_id = phone_number_id
        self.token = token
        self.api_version = api_version
        self.transport = transport

    def _url(self, path: str = "messages") -> str:
        phone_id = self.phone_number_id or config.phone_number_id()
        version = self.api_version or config.whatsapp_api_version()
        return f"{GRAPH_BASE_URL}/{version}/{phone_id}/{path}"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token or config.meta_api_token()}",
            "Content-Type": "application/json",
        }

    async def _post(self, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=15.0) as client:
                resp = await client.post(self._url(), json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise MessagingError(f"WhatsApp API unreachable: {e}") from e

        if resp.status_code >= 400:
            raise MessagingError(f"WhatsApp API error {resp.status_code}: {resp.text}")
        return resp.json()

    async def send(self, message) -> dict:
        data = await self._post(build_payload(message))
        logger.debug("%s sent to %s", type(message).__name__, message.to)
        return data

    async def send_text(self, to: str, body: str) -> dict:
        return await self.send(TextMessage(to=to, body=body))

    async def send_interactive_buttons(self, to: str, body: str, buttons: List[Button], header_image_url=None, footer=None) -> dict:
        return await self.send(ButtonsMessage(to=to, body=body, buttons=buttons, header_image_url=header_image_url, footer=footer))

    async def send_image(self, to: str, link: str, caption: Optional[str] = None) -> dict:
        return await self.send(ImageMessage(to=to, link=link, caption=caption))

    async def send_payment_request(self, to: str, **template_params) -> dict:
        return await self.send(PaymentRequestMessage(to=to, **template_params))

    async def mark_as_read(self, message_id: str):
        """
        UX: blue ticks so the user knows we are processing. Failures are only logged.
        """
        payload = {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
        try:
            await self._post(payload)
        except MessagingError as e:
            logger.warning("Could not mark %s as read: %s", message_id, e)
