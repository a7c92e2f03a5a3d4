from threadline.config import settings
from threadline.services.errors import ConfigurationError
from threadline.services.providers.base import MessagingProvider
from threadline.services.providers.meta_messenger import MetaMessengerProvider
from threadline.services.providers.whatsapp import WhatsAppCloudProvider


def get_provider(channel: str) -> MessagingProvider:
    """Build the sender for a normalized channel. Raises ConfigurationError when it cannot."""
    if channel == "whatsapp":
        if not settings.whatsapp_access_token or not settings.whatsapp_phone_number_id:
            raise ConfigurationError("WhatsApp is not configured (access token and phone number id required)")
        return WhatsAppCloudProvider(
            access_token=settings.whatsapp_access_token,
            phone_number_id=settings.whatsapp_phone_number_id,
            api_version=settings.graph_api_version,
            timeout_seconds=settings.provider_timeout_seconds,
        )

    if channel in ("instagram", "facebook"):
        if not settings.meta_page_access_token:
            raise ConfigurationError(f"{channel} is not configured (page access token required)")
        return MetaMessengerProvider(
            access_token=settings.meta_page_access_token,
            channel=channel,
            api_version=settings.graph_api_version,
            timeout_seconds=settings.provider_timeout_seconds,
        )

    raise ConfigurationError(f"No messaging provider for channel: {channel}")


__all__ = ["MessagingProvider", "MetaMessengerProvider", "WhatsAppCloudProvider", "get_provider"]
