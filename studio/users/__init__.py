"""User store: one record per provider identity, created on first login."""
