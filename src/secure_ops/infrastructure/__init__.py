"""Infrastructure adapters: persistence, notifications, chain simulation."""
