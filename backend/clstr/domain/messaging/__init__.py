"""Direct messaging exports."""

from . import eligibility, realtime, service, sockets  # noqa: F401
from .models import Conversation, Eligibility, Message, MessagePage  # noqa: F401
from .realtime import ChangeEvent, InMemoryFeed, MessageBuffer, MessageFanout, RedisStreamFeed  # noqa: F401
from .repo import reset_memory_state  # noqa: F401
