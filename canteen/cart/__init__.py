"""Shopping cart: line items, local and remote stores, reconciliation engine."""
