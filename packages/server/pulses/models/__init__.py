# SQLModel definitions: imported here so metadata is populated for create_all.
from .base import TimestampMixin  # noqa: F401
from .user import User  # noqa: F401
from .card import Card  # noqa: F401
from .pulse import Pulse  # noqa: F401
from .pulse_card import PulseCard  # noqa: F401
from .channel import PulseChannel, PulseChannelRecipient  # noqa: F401
from .event import Event  # noqa: F401
