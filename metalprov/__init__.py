"""Declarative storage provisioning for bare-metal rescue systems."""

__version__ = "0.1.0"
