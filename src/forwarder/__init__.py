from .core import Forwarder, ForwarderException, SourceNotFoundError
from .settings import ForwarderSettings
from .features.manager import Manager
from .features.publisher import Publisher
from .features.broker import BrokerClient, MqttBrokerClient

__all__ = [
    "Forwarder",
    "ForwarderException",
    "SourceNotFoundError",
    "ForwarderSettings",
    "Manager",
    "Publisher",
    "BrokerClient",
    "MqttBrokerClient",
]
