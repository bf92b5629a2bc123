"""
Promotions App

Referral and reward code ledger: code registry, checkout redemptions,
referral rewards and post-payment usage and balance reconciliation.
"""
