"""Services: upstream feeds and quote reconciliation."""
