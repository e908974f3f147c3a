"""
Domain Layer - Orders, Receipts and Reconciliation

This layer contains:
- Signed message models and the codec that ids, signs and validates them
- The order description model (items or memo, frozen sats amount)
- The receipt parser
- The order session (reconciliation state machine)
- The invoice request orchestrator

Key principle: no network code here. Relays, LNURL services and keys are
reached through the protocols in ``ports``.
"""
