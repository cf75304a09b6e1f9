"""Delivery queue access and the worker that drains it."""
