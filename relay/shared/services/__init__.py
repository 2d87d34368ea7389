"""Storage and host-process services."""
