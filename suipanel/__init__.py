"""Proxy panel building blocks: settings, logging, SQLite models, migrations, HTTP helpers and traffic tracking."""

__version__ = "0.1.0"