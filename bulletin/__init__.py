"""Bulletin: subscriber management and reliable newsletter delivery."""
