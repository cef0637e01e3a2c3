"""Credit ledger and referral bonus service."""

__version__ = "0.1.0"
