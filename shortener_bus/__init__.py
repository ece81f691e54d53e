from shortener_bus.messaging import (
    BrokerClient,
    ConsumerRegistry,
    ReconnectPolicy,
    Registration,
    Subscription,
    dispatch_message,
)
