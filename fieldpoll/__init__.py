"""
fieldpoll - Modbus TCP/RTU polling and decoding engine

Layers:
1. common - Configuration model, exceptions, logging, tick scheduling
2. services.config - YAML loading and validation
3. services.acquisition - Transports, decoder, resolver, pollers, engine, sinks
"""

__version__ = "1.0.0"
