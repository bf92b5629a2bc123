"""
Audit App

Immutable record of code lifecycle events, redemptions, reconciliation
outcomes and the anomalies that the ledger refuses to hide.
"""
