"""REST transport and endpoint groups."""

from bsk.rest.account import AccountApi
from bsk.rest.margin import MarginApi
from bsk.rest.market import MarketApi
from bsk.rest.resilience import RetryPolicy, classify_error
from bsk.rest.transport import RestClient, RestTransport
from bsk.rest.user_stream import UserStreamApi
from bsk.rest.wallet import WalletApi

__all__ = [
    "AccountApi",
    "MarginApi",
    "MarketApi",
    "RestClient",
    "RestTransport",
    "RetryPolicy",
    "UserStreamApi",
    "WalletApi",
    "classify_error",
]
