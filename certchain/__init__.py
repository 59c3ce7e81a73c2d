"""
CertChain - Ledger-Backed Academic Certificates

Certificates are content-addressed records on an append-only ledger.
Governance (revoke/reactivate requests), abuse protection and
verification logs live in an off-ledger store.
"""

__version__ = "0.1.0"
