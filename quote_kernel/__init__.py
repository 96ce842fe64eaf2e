"""
Quote kernel: margin-protected pricing, document state machines, the
snapshot and audit ledger, single-use portal tokens and the payment ledger.

Layers (inner to outer): db -> models -> domain (pure) -> services.
"""

__version__ = "0.1.0"
