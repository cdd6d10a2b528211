"""Collaborator services used by the chat relay."""
