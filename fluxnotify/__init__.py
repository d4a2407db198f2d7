"""Event forwarding to chat services and webhook receivers that request reconciliation."""

__version__ = "0.1.0"