from threadline.logging_config import get_logger
from threadline.services.errors import ProviderSendError
from threadline.services.providers.base import GraphAPIProvider

logger = get_logger("providers.whatsapp")


class WhatsAppCloudProvider(GraphAPIProvider):
    """WhatsApp Cloud API sender."""

    name = "whatsapp"

    def __init__(self, access_token: str, phone_number_id: str, api_version: str = "v19.0", timeout_seconds: float = 15.0):
        super().__init__(access_token, api_version, timeout_seconds)
        self.phone_number_id = phone_number_id

    def send_text(self, destination: str, text: str) -> str:
        to = destination.lstrip("+").replace(" ", "")
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        data = self._post(f"{self.phone_number_id}/messages", payload)

        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise ProviderSendError("whatsapp response carried no message id")

        logger.debug(f"WhatsApp message sent: {message_id}")
        return message_id
