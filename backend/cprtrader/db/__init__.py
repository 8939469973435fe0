"""Database layer: models, session management and store repositories."""
