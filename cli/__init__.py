"""CareBrain operator CLI."""
