from .api import BrokerClient, BrokerError

__all__ = ["BrokerClient", "BrokerError"]
