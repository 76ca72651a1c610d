"""Domain services: entitlement ledger, session manager and roster reconciliation."""
