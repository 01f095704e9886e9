"""GPS tracker backend."""
