"""bsk - signed REST and managed WebSocket streams for Binance-style spot APIs."""

__version__ = "0.1.0"

from bsk.client import Client  # noqa: E402
from bsk.config import Profile, Settings, get_settings  # noqa: E402

__all__ = ["Client", "Profile", "Settings", "__version__", "get_settings"]
