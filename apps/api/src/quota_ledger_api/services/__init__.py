"""Domain services for the quota-granting ledger."""
