"""Shared models, configuration, errors and stores."""
