"""
Vault Core

Account lifecycle and settlement core for a retail bank: verification gates,
balance-mutating transaction posting, admin approvals, joint account
activation, and a consistency auditor for profile/application/account drift.
"""

__version__ = "1.0.0"
