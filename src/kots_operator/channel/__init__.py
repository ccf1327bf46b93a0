# ABOUTME: Control channel package: wire codec, command types, websocket client
# ABOUTME: Everything that travels from the control plane to the operator

"""Control channel."""
