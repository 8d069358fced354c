"""
Broker adapters behind the BrokerPort protocol.

The paper broker has no third-party dependency; the Alpaca adapter is
imported lazily so alpaca-py is only needed when it is used.
"""

from broker.paper import PaperBroker
from broker.port import BrokerError, BrokerPort

__all__ = [
    "BrokerError",
    "BrokerPort",
    "PaperBroker",
]


def get_alpaca_broker(api_key: str, api_secret: str, *, paper: bool = True):
    """Lazy import to avoid requiring alpaca-py when not used."""
    from broker.alpaca_broker import AlpacaBroker

    return AlpacaBroker(api_key, api_secret, paper=paper)
