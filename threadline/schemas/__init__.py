from threadline.schemas.cooldown import CooldownCheckRequest, CooldownCheckResponse
from threadline.schemas.maintenance import OutboxRunRequest, OutboxRunResponse, StaleSweepRequest, StaleSweepResponse
from threadline.schemas.webhook import InboundEventRequest, InboundEventResponse

__all__ = [
    "CooldownCheckRequest",
    "CooldownCheckResponse",
    "InboundEventRequest",
    "InboundEventResponse",
    "OutboxRunRequest",
    "OutboxRunResponse",
    "StaleSweepRequest",
    "StaleSweepResponse",
]
