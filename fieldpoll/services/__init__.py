"""
fieldpoll Services

- Config Service - YAML loading and validation
- Acquisition Service - Modbus I/O, polling, decoding, delivery
"""
