"""
Channel module for the UI collaborator boundary.
"""

from llamadesk.channel.routes import create_app, create_channel_routes

__all__ = ["create_app", "create_channel_routes"]
