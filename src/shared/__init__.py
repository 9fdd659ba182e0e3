"""Config, database, audit and secrets helpers shared by the services."""
