"""Threadline: conversational agent gateway for messaging-provider webhooks."""

__version__ = "0.1.0"
