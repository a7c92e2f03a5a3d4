from threadline.logging_config import get_logger
from threadline.services.errors import ProviderSendError
from threadline.services.providers.base import GraphAPIProvider

logger = get_logger("providers.meta_messenger")


class MetaMessengerProvider(GraphAPIProvider):
    """Instagram Direct and Facebook Messenger sender (Send API on /me/messages)."""

    def __init__(self, access_token: str, channel: str, api_version: str = "v19.0", timeout_seconds: float = 15.0):
        super().__init__(access_token, api_version, timeout_seconds)
        self.name = channel

    def send_text(self, destination: str, text: str) -> str:
        # Instagram contacts are stored as "ig:<scoped id>"
        recipient_id = destination.split(":", 1)[1] if destination.startswith("ig:") else destination
        payload = {
            "recipient": {"id": recipient_id},
            "messaging_type": "RESPONSE",
            "message": {"text": text},
        }
        data = self._post("me/messages", payload)

        message_id = data.get("message_id")
        if not message_id:
            raise ProviderSendError(f"{self.name} response carried no message id")

        logger.debug(f"{self.name} message sent: {message_id}")
        return message_id
