"""Persistence, caching and third-party clients shared by the bot."""
