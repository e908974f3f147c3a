"""
Infrastructure Layer - Adapters for the domain ports

- ``identity``: local secp256k1 key, BIP-340 signatures
- ``bolt11``: invoice amount decoding
- ``relay``: in-memory relay and NIP-01 websocket client
- ``lnurl``: LNURL-pay invoice service over httpx
"""
