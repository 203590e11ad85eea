"""Transfer rails: self-custody (two-phase), house pool (single-phase) and the router."""
