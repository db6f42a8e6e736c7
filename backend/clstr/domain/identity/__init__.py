"""Identity domain exports."""

from .models import Identity, MessageUser, Profile, is_online, normalise_domain  # noqa: F401
from .repo import register_profile, reset_memory_state  # noqa: F401
from .resolver import IdentityResolver, get_resolver  # noqa: F401
