"""
iot-sandbox: MQTT v5 sandbox client.

Resolves broker settings from a .env file, opens a TCP or TLS transport,
connects, subscribes, publishes and runs until SIGINT/SIGTERM.
"""
