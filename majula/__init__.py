"""Overlay network messages, links, cost-probing channels, stream tunnelling stubs and a WebSocket client."""

__version__ = "0.1.0"