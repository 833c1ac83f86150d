"""Domain sync services: one per Bridge resource type."""
