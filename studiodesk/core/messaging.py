import hashlib
import hmac
import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx
import structlog

from ..config import settings

logger = structlog.get_logger("studiodesk.messaging")

SUPPORTED_LANGUAGES = ("es", "ca", "en")
PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# Per reminder type and language: (subject, body).
REMINDER_TEMPLATES: dict[str, dict[str, tuple[str, str]]] = {
    "24h": {
        "es": (
            "Recordatorio: Cita mañana - {{serviceName}}",
            "Hola {{clientName}}, te recordamos que tienes una cita para {{serviceName}} "
            "el {{appointmentDate}} a las {{appointmentTime}}. Precio: €{{price}}. ¡Te esperamos!",
        ),
        "ca": (
            "Recordatori: Cita demà - {{serviceName}}",
            "Hola {{clientName}}, et recordem que tens una cita per {{serviceName}} "
            "el {{appointmentDate}} a les {{appointmentTime}}. Preu: €{{price}}. T'esperem!",
        ),
        "en": (
            "Reminder: Appointment tomorrow - {{serviceName}}",
            "Hi {{clientName}}, reminder that you have an appointment for {{serviceName}} "
            "on {{appointmentDate}} at {{appointmentTime}}. Price: €{{price}}. See you there!",
        ),
    },
    "2h": {
        "es": (
            "Tu cita es en 2 horas - {{serviceName}}",
            "Hola {{clientName}}, tu cita para {{serviceName}} es en 2 horas "
            "({{appointmentTime}}). Precio: €{{price}}. ¡Te esperamos!",
        ),
        "ca": (
            "La teva cita és en 2 hores - {{serviceName}}",
            "Hola {{clientName}}, la teva cita per {{serviceName}} és en 2 hores "
            "({{appointmentTime}}). Preu: €{{price}}. T'esperem!",
        ),
        "en": (
            "Your appointment is in 2 hours - {{serviceName}}",
            "Hi {{clientName}}, your appointment for {{serviceName}} is in 2 hours "
            "({{appointmentTime}}). Price: €{{price}}. See you there!",
        ),
    },
    "confirmation": {
        "es": (
            "Confirma tu cita - {{serviceName}}",
            "Hola {{clientName}}, por favor confirma tu cita para {{serviceName}} "
            "el {{appointmentDate}} a las {{appointmentTime}}. Precio: €{{price}}. "
            "Confirma aquí: {{confirmationUrl}}",
        ),
        "ca": (
            "Confirma la teva cita - {{serviceName}}",
            "Hola {{clientName}}, si us plau confirma la teva cita per {{serviceName}} "
            "el {{appointmentDate}} a les {{appointmentTime}}. Preu: €{{price}}. "
            "Confirma aquí: {{confirmationUrl}}",
        ),
        "en": (
            "Confirm your appointment - {{serviceName}}",
            "Hi {{clientName}}, please confirm your appointment for {{serviceName}} "
            "on {{appointmentDate}} at {{appointmentTime}}. Price: €{{price}}. "
            "Confirm here: {{confirmationUrl}}",
        ),
    },
    "birthday": {
        "es": (
            "¡Feliz cumpleaños, {{clientName}}!",
            "Hola {{clientName}}, todo el equipo de {{storeName}} te desea un feliz cumpleaños. "
            "Tienes {{loyaltyPoints}} puntos de fidelidad esperándote. ¡Hasta pronto!",
        ),
        "ca": (
            "Per molts anys, {{clientName}}!",
            "Hola {{clientName}}, tot l'equip de {{storeName}} et desitja un feliç aniversari. "
            "Tens {{loyaltyPoints}} punts de fidelitat esperant-te. Fins aviat!",
        ),
        "en": (
            "Happy birthday, {{clientName}}!",
            "Hi {{clientName}}, everyone at {{storeName}} wishes you a happy birthday. "
            "You have {{loyaltyPoints}} loyalty points waiting for you. See you soon!",
        ),
    },
    "post_care": {
        "es": (
            "¿Qué tal tu {{serviceName}}?",
            "Hola {{clientName}}, esperamos que tu {{serviceName}} del {{appointmentDate}} con "
            "{{artistName}} esté curando bien. Recuerda seguir los cuidados indicados y "
            "escríbenos si tienes cualquier duda.",
        ),
        "ca": (
            "Com va el teu {{serviceName}}?",
            "Hola {{clientName}}, esperem que el teu {{serviceName}} del {{appointmentDate}} amb "
            "{{artistName}} s'estigui curant bé. Recorda seguir les cures indicades i "
            "escriu-nos si tens qualsevol dubte.",
        ),
        "en": (
            "How is your {{serviceName}} healing?",
            "Hi {{clientName}}, we hope your {{serviceName}} from {{appointmentDate}} with "
            "{{artistName}} is healing well. Keep following the aftercare instructions and "
            "message us if you have any questions.",
        ),
    },
}


class MessageDeliveryError(RuntimeError):
    pass


@dataclass
class OutboundMessage:
    channel: str
    recipient: str
    subject: str
    body: str
    language: str
    reminder_type: str
    metadata: dict = field(default_factory=dict)


def render_placeholders(text: str, variables: dict) -> str:
    """Replace ``{{name}}``; unknown placeholders are left as written."""

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables or variables[key] is None:
            return match.group(0)
        return str(variables[key])

    return PLACEHOLDER_RE.sub(_sub, text)


def render_reminder(reminder_type: str, language: str, variables: dict) -> tuple[str, str]:
    templates = REMINDER_TEMPLATES.get(reminder_type)
    if templates is None:
        raise ValueError(f"unknown reminder type: {reminder_type}")
    lang = language if language in SUPPORTED_LANGUAGES else settings.DEFAULT_MESSAGE_LANGUAGE
    subject, body = templates.get(lang) or templates["es"]
    return render_placeholders(subject, variables), render_placeholders(body, variables)


class MessageSender(ABC):
    @abstractmethod
    def send(self, message: OutboundMessage) -> None:
        """Deliver one message or raise MessageDeliveryError."""


class LoggingMessageSender(MessageSender):
    def send(self, message: OutboundMessage) -> None:
        logger.info(
            "message_sent",
            channel=message.channel,
            recipient=message.recipient,
            reminder_type=message.reminder_type,
            language=message.language,
            subject=message.subject,
        )


class WebhookMessageSender(MessageSender):
    """POSTs each message as JSON to a delivery gateway (email/WhatsApp bridge)."""

    def __init__(
        self,
        url: str,
        secret: str = "",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.transport = transport

    def _headers(self, raw: bytes) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            digest = hmac.new(self.secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
            headers["X-Signature-SHA256"] = digest
        return headers

    def send(self, message: OutboundMessage) -> None:
        payload = {
            "channel": message.channel,
            "to": message.recipient,
            "subject": message.subject,
            "body": message.body,
            "language": message.language,
            "type": message.reminder_type,
            "metadata": message.metadata,
        }
        raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.url, content=raw, headers=self._headers(raw))
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MessageDeliveryError(f"webhook delivery failed: {exc}") from exc
        logger.info(
            "message_sent",
            channel=message.channel,
            reminder_type=message.reminder_type,
            status_code=response.status_code,
        )


def build_message_sender() -> MessageSender:
    if settings.MESSAGING_WEBHOOK_URL:
        return WebhookMessageSender(
            settings.MESSAGING_WEBHOOK_URL,
            secret=settings.MESSAGING_WEBHOOK_SECRET,
        )
    return LoggingMessageSender()
