from slowapi import Limiter
from slowapi.util import get_remote_address

# Shared by every router; main.py registers it on app.state
limiter = Limiter(key_func=get_remote_address)
