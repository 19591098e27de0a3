"""Coordinator, specialists and the round machinery around them."""
