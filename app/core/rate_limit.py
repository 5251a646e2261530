"""HTTP-level rate limiting for the read-only endpoints, using slowapi.

Dispatched actions are limited per client key by the gateway itself.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Keyed by remote address
limiter = Limiter(key_func=get_remote_address)
