"""
Wire Models

This package defines the pydantic models for the handful of XRPC payloads the
client core itself needs to understand. Everything else the per-endpoint layer
sends or receives is opaque to the core.

Key Models:
- session.py: Session snapshot and DID document
- server.py: com.atproto.server.* inputs and outputs
- repo.py: com.atproto.repo.describeRepo output

All models accept the protocol's camelCase field names through aliases while
exposing snake_case attributes, and populate by either name.
"""
