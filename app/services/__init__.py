"""Return lifecycle services."""
