"""User lookup and presence endpoints."""
