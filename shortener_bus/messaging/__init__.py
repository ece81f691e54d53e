from .dispatcher import dispatch_message
from .rabbitmq_client import BrokerClient, Subscription, encode_message
from .reconnect import ReconnectPolicy
from .registry import ConsumerRegistry, Registration
