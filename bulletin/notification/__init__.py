"""Outbound email clients.

All clients implement ``EmailClient.send_email`` and signal failures with
``TransientDeliveryError`` or ``PermanentDeliveryError``.
"""
