"""Connection ledger exports."""

from . import audit, policy, service, sockets  # noqa: F401
from .models import Connection, ConnectionStatus, Decision  # noqa: F401
from .repo import reset_memory_state  # noqa: F401
from .schemas import ConnectionSummary, StatusesResponse  # noqa: F401
