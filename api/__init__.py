"""CareBrain HTTP API."""
