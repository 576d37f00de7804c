"""
Clients package initialization.

Submodules are imported directly where needed
(e.g. `from clients.gmail_client import GmailClient`).
"""
