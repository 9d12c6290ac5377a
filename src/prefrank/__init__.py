"""prefrank: rank images by learning from a few liked and disliked examples."""

__version__ = "0.1.0"
