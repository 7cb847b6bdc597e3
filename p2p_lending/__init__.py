"""
P2P Lending Engine

Loan lifecycle and trust orchestration for a peer-to-peer micro-lending
platform: offer matching, idempotent payment completion, trust scoring,
voucher accountability, schedule arithmetic and borrower eligibility.
"""

__version__ = "1.0.0"
