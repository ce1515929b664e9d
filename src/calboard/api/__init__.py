"""HTTP surface for webhook intake and operator controls."""
