"""Parse, export and apply MIG partition layouts, with hooks around each step."""

__version__ = "0.12.2"