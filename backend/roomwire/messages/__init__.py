"""Message history, edit/delete, search and read-receipt endpoints."""
