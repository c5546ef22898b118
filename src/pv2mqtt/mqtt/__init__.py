"""MQTT side of the bridge: routing, transport, discovery descriptors and state publishing."""
