"""Web layer: Flask blueprints and templates."""
