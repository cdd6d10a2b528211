"""Request, response and wire-event schemas."""
