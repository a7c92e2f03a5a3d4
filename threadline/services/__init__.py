from threadline.services.conversation_service import (
    mark_known_field,
    normalize_channel,
    resolve_or_create,
    touch_outbound,
)
from threadline.services.errors import (
    ConfigurationError,
    DuplicateError,
    GenerationError,
    ProviderSendError,
    ThreadlineError,
)
from threadline.services.state_machine import (
    InvalidTransitionError,
    ReplyState,
    can_transition,
    transition,
)
