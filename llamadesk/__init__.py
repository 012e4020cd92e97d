"""
llamadesk - local llama.cpp chat backend.

Provisions, supervises and talks to a local llama-server process and
relays its streamed output to a UI collaborator.
"""

__version__ = "1.0.0"
