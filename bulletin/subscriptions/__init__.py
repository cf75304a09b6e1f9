"""Subscriber sign-up and confirmation."""
